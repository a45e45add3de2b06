import logging

import click
from flask import Flask

from config import Config
from telemed.errors import TelemedError
from telemed.extensions import db, migrate, cors, socketio, jwt
from telemed.utils.response import error, error_from


def _configure_logging(level):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _register_jwt_handlers():
    @jwt.unauthorized_loader
    def missing_token(reason):
        return error("Missing authorization token", 401, {"code": "authentication_error"})

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return error("Invalid authorization token", 401, {"code": "authentication_error"})

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return error("Authorization token has expired", 401, {"code": "authentication_error"})


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    _configure_logging(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    migrate.init_app(app, db)
    cors.init_app(app, origins=app.config["CORS_ORIGINS"])

    # Handler socket harus terdaftar sebelum init_app, supaya ikut ke setiap server baru
    from telemed import socket_events  # noqa: F401

    socketio.init_app(app, message_queue=app.config.get("SOCKETIO_MESSAGE_QUEUE"))
    jwt.init_app(app)
    _register_jwt_handlers()

    # Model di-import supaya tabel terdaftar di metadata
    from telemed.models import chat, slot_lock, user  # noqa: F401

    from telemed.services.payment_service import payment_service
    from telemed.services.slot_lock_service import SlotLockManager
    from telemed.realtime import init_realtime

    payment_service.init_app(app)
    app.extensions["slot_locks"] = SlotLockManager(lock_minutes=app.config["SLOT_LOCK_MINUTES"])
    init_realtime(app, socketio)

    # Register blueprints
    from telemed.routes.appointment_routes import appointment_bp
    from telemed.routes.chat_routes import chat_bp

    app.register_blueprint(appointment_bp)
    app.register_blueprint(chat_bp)

    @app.errorhandler(TelemedError)
    def handle_telemed_error(e):
        db.session.rollback()
        return error_from(e)

    @app.cli.command("expire-locks")
    def expire_locks():
        """Tandai semua lock yang lewat batas waktu sebagai expired."""
        count = app.extensions["slot_locks"].sweep_expired()
        click.echo(f"{count} slot lock(s) expired")

    @app.route("/")
    def index():
        return "Telemedicine Backend is Running!"

    return app
