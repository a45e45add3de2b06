import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name, default):
    return int(os.environ.get(name, default))


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///telemed.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # JWT dipakai bersama oleh HTTP dan handshake socket
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or os.environ.get('SECRET_KEY')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')

    # Backplane opsional (misal redis://...) supaya room bisa dipakai banyak instance
    SOCKETIO_MESSAGE_QUEUE = os.environ.get('SOCKETIO_MESSAGE_QUEUE') or None

    # Booking
    SLOT_LOCK_MINUTES = _int_env('SLOT_LOCK_MINUTES', 10)

    # Call signaling timers
    CALL_INVITE_TIMEOUT_SECONDS = _int_env('CALL_INVITE_TIMEOUT_SECONDS', 45)
    CALL_IDLE_TIMEOUT_SECONDS = _int_env('CALL_IDLE_TIMEOUT_SECONDS', 3600)
    CALL_DISCONNECT_GRACE_SECONDS = _int_env('CALL_DISCONNECT_GRACE_SECONDS', 10)
    CALL_SWEEP_INTERVAL_SECONDS = _int_env('CALL_SWEEP_INTERVAL_SECONDS', 5)
    CALL_SWEEPER_ENABLED = os.environ.get('CALL_SWEEPER_ENABLED', '1') == '1'

    # Chat
    CHAT_PAGE_SIZE = _int_env('CHAT_PAGE_SIZE', 20)
    CHAT_MAX_PAGE_SIZE = _int_env('CHAT_MAX_PAGE_SIZE', 100)
    CHAT_MAX_ATTACHMENTS = _int_env('CHAT_MAX_ATTACHMENTS', 5)

    # Payment gateway (Midtrans Snap)
    MIDTRANS_SERVER_KEY = os.environ.get('MIDTRANS_SERVER_KEY')
    MIDTRANS_IS_PRODUCTION = os.environ.get('MIDTRANS_IS_PRODUCTION') == 'True'
