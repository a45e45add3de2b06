from datetime import date, datetime, timedelta

import pytest

from config import Config
from telemed import create_app
from telemed.extensions import db, socketio
from telemed.models.user import ROLE_ADMIN, ROLE_DOCTOR, ROLE_USER, User
from telemed.utils.auth import AuthenticatedSender, issue_token


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret-key"
    JWT_SECRET_KEY = "test-jwt-secret-key-that-is-long-enough"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SOCKETIO_MESSAGE_QUEUE = None
    CALL_SWEEPER_ENABLED = False
    MIDTRANS_SERVER_KEY = "SB-Mid-server-test"
    MIDTRANS_IS_PRODUCTION = False
    LOG_LEVEL = "WARNING"


class FakeClock:
    """Jam yang bisa dimajukan manual dari test."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _build_app(config_class):
    app = create_app(config_class)
    with app.app_context():
        db.create_all()
    return app


@pytest.fixture
def app():
    app = _build_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def users(app):
    patient = User(email="patient@example.com", full_name="Pasien Satu", role=ROLE_USER)
    other_patient = User(email="patient2@example.com", full_name="Pasien Dua", role=ROLE_USER)
    doctor = User(
        email="doctor@example.com",
        full_name="Dr. Sari",
        role=ROLE_DOCTOR,
        specialization="Hematologi",
        consultation_price=150000,
    )
    other_doctor = User(email="doctor2@example.com", full_name="Dr. Budi", role=ROLE_DOCTOR)
    admin = User(email="admin@example.com", full_name="Admin", role=ROLE_ADMIN)
    db.session.add_all([patient, other_patient, doctor, other_doctor, admin])
    db.session.commit()
    return {
        "patient": patient,
        "other_patient": other_patient,
        "doctor": doctor,
        "other_doctor": other_doctor,
        "admin": admin,
    }


@pytest.fixture
def tokens(users):
    return {name: issue_token(u.id, u.role) for name, u in users.items()}


@pytest.fixture
def auth_headers(tokens):
    def make(name):
        return {"Authorization": f"Bearer {tokens[name]}"}
    return make


@pytest.fixture
def socket_client(app, tokens):
    """Factory Flask-SocketIO test client yang sudah terautentikasi."""
    clients = []

    def connect(name=None, token=None):
        auth = {"token": token if token is not None else tokens[name]}
        sc = socketio.test_client(app, auth=auth)
        clients.append(sc)
        return sc

    yield connect
    for sc in clients:
        if sc.is_connected():
            sc.disconnect()


@pytest.fixture
def realtime(app):
    return app.extensions["realtime"]


@pytest.fixture
def conversation(app, users):
    chat = app.extensions["realtime"].chat
    sender = AuthenticatedSender(role=ROLE_USER, id=users["patient"].id)
    conv, _ = chat.get_or_create_conversation(sender, users["doctor"].id)
    return conv


@pytest.fixture
def fake_clock():
    return FakeClock(datetime(2030, 1, 1, 8, 0, 0))


@pytest.fixture
def tomorrow():
    return (date.today() + timedelta(days=1)).isoformat()


@pytest.fixture
def file_app(tmp_path):
    """App dengan SQLite berbasis file, supaya beberapa thread bisa berbagi database."""

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'telemed.db'}"

    app = _build_app(FileConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
