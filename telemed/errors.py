"""Failure taxonomy shared by the HTTP routes and the socket handlers."""


class TelemedError(Exception):
    status_code = 400
    code = "bad_request"
    default_message = "Request could not be processed"

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"code": self.code, "message": self.message}


class ValidationError(TelemedError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request data"


# =========================
# BOOKING
# =========================
class SlotUnavailable(TelemedError):
    status_code = 409
    code = "slot_unavailable"
    default_message = "This slot is no longer available, please pick another"


class LockNotFound(TelemedError):
    status_code = 404
    code = "lock_not_found"
    default_message = "Slot reservation not found"


class LockExpired(TelemedError):
    status_code = 410
    code = "lock_expired"
    default_message = "Your slot reservation has expired, please book again"


class LockNotOwnedByCaller(TelemedError):
    status_code = 403
    code = "lock_not_owned"
    default_message = "This reservation belongs to another user"


class InvalidLockState(TelemedError):
    status_code = 409
    code = "invalid_lock_state"
    default_message = "This reservation cannot be changed in its current state"


class PaymentNotVerified(TelemedError):
    status_code = 402
    code = "payment_not_verified"
    default_message = "Payment not completed or could not be verified"


# =========================
# MESSAGING
# =========================
class AuthenticationError(TelemedError):
    status_code = 401
    code = "authentication_error"
    default_message = "Could not validate credentials. Please log in again."


class Forbidden(TelemedError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have access to this resource"


class ConversationNotFound(TelemedError):
    status_code = 404
    code = "conversation_not_found"
    default_message = "Conversation not found"


class MessageNotFound(TelemedError):
    status_code = 404
    code = "message_not_found"
    default_message = "Message not found"


class InvalidCallState(TelemedError):
    status_code = 409
    code = "invalid_call_state"
    default_message = "This call signal does not match the current call state"
