from dataclasses import dataclass
from functools import wraps

from flask_jwt_extended import create_access_token, decode_token, get_jwt, get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

from telemed.errors import AuthenticationError, Forbidden
from telemed.models.user import ROLES


@dataclass(frozen=True)
class AuthenticatedSender:
    """Identitas hasil verifikasi token. Role tidak pernah diambil dari payload client."""

    role: str
    id: int

    @property
    def channel(self):
        # Channel pribadi per identitas, contoh "doctor_7"
        return f"{self.role}_{self.id}"


def issue_token(user_id, role, expires_delta=None):
    return create_access_token(
        identity=str(user_id),
        additional_claims={"role": role},
        expires_delta=expires_delta,
    )


def _sender_from_claims(identity, claims):
    role = claims.get("role")
    if role not in ROLES:
        raise AuthenticationError()
    try:
        return AuthenticatedSender(role=role, id=int(identity))
    except (TypeError, ValueError):
        raise AuthenticationError()


def authenticate_token(token):
    """Dipakai handshake socket: token -> AuthenticatedSender atau AuthenticationError."""
    if not token:
        raise AuthenticationError()
    try:
        claims = decode_token(token)
    except (JWTExtendedException, PyJWTError) as e:
        raise AuthenticationError() from e
    return _sender_from_claims(claims.get("sub"), claims)


def current_sender():
    return _sender_from_claims(get_jwt_identity(), get_jwt())


def role_required(*roles):
    """Verifikasi JWT lalu cek role; handler menerima `sender` sebagai argumen."""

    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            verify_jwt_in_request()
            sender = current_sender()
            if roles and sender.role not in roles:
                raise Forbidden("Your role is not allowed to use this endpoint")
            return f(sender, *args, **kwargs)
        return wrapper
    return decorator
