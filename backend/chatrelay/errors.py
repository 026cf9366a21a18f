"""Error taxonomy shared by every chatrelay component.

Each error carries an HTTP status code and a short machine-readable code so
the REST layer and the WebSocket loop can report it the same way:

    Unauthenticated        401  bad / missing / expired credential
    Forbidden              403  authenticated but not allowed on this entity
    NotFound               404  entity absent
    InvalidPayload         400  input violates an invariant
    Conflict               409  operation refused, e.g. removing the last admin
    TransientStoreFailure  503  document store call failed or timed out

Errors are reported to the caller only. They are never broadcast.
"""
from enum import Enum
from typing import Optional


class ChatError(Exception):
    """Base exception for chat errors."""

    status_code: int = 500
    code: str = "server_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class AuthErrorKind(str, Enum):
    """Why a credential was refused."""
    MISSING = "missing"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    UNKNOWN_IDENTITY = "unknownIdentity"


class Unauthenticated(ChatError):
    status_code = 401
    code = "unauthenticated"

    def __init__(self, kind: AuthErrorKind, message: Optional[str] = None):
        self.kind = kind
        super().__init__(message or f"Not authenticated: {kind.value}")

    def to_dict(self) -> dict:
        return {"error": self.code, "kind": self.kind.value, "detail": self.message}


class Forbidden(ChatError):
    status_code = 403
    code = "forbidden"


class NotFound(ChatError):
    status_code = 404
    code = "not_found"


class InvalidPayload(ChatError):
    status_code = 400
    code = "invalid_payload"


class Conflict(ChatError):
    status_code = 409
    code = "conflict"


class TransientStoreFailure(ChatError):
    """Raised when a document store call fails or exceeds its timeout."""
    status_code = 503
    code = "store_unavailable"


class SummaryUpdateFailed(TransientStoreFailure):
    """The message was saved but the conversation summary write failed.

    Carries the persisted message so the caller can run the repair step.
    """

    def __init__(self, message: str, saved_message):
        self.saved_message = saved_message
        super().__init__(message)
