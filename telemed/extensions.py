from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_cors import CORS
from flask_socketio import SocketIO
from flask_jwt_extended import JWTManager


db = SQLAlchemy()
migrate = Migrate()
cors = CORS()
# async_handlers=False: event dari satu koneksi diproses berurutan (urutan kirim terjaga)
socketio = SocketIO(cors_allowed_origins="*", async_handlers=False)
jwt = JWTManager()
