"""Error taxonomy shared by every component.

Each failure the gateway can report carries an :class:`ErrorKind`. Exceptions
raised inside a component carry their kind, and operations whose outcome is
part of their contract return result models holding an :class:`ErrorDetail`
instead of raising. Callers branch on ``kind``, never on message text.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Kinds of failure surfaced to callers."""
    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED_PAYLOAD = "malformed_payload"
    UNKNOWN_SERVICE = "unknown_service"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION = "authentication"
    TRANSIENT = "transient"
    INTEGRATION = "integration"
    SYNC = "sync"
    INTEGRITY = "integrity"
    TASK_EXECUTION = "task_execution"
    NOT_ROLLBACKABLE = "not_rollbackable"
    ALREADY_ROLLED_BACK = "already_rolled_back"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"


class ErrorDetail(BaseModel):
    """User-visible failure: ``{kind, message}``."""
    kind: ErrorKind
    message: str


class GatewayError(Exception):
    """Base gateway error."""

    kind: ErrorKind = ErrorKind.INTEGRATION

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(kind=self.kind, message=self.message)


class IntegrationError(GatewayError):
    """Provider call failed for a reason outside the other kinds."""
    kind = ErrorKind.INTEGRATION


class AuthenticationError(IntegrationError):
    """Authentication failed (expired or revoked credentials)."""
    kind = ErrorKind.AUTHENTICATION


class RateLimitError(IntegrationError):
    """Rate limit exceeded."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientError(IntegrationError):
    """Timeouts, connection resets and provider 5xx responses."""
    kind = ErrorKind.TRANSIENT


class SignatureInvalid(GatewayError):
    """Webhook signature verification failed."""
    kind = ErrorKind.SIGNATURE_INVALID


class IntegrityError(GatewayError):
    """Ciphertext failed authentication: tampered blob or wrong key."""
    kind = ErrorKind.INTEGRITY


class SyncError(GatewayError):
    """A single entity could not be reconciled."""
    kind = ErrorKind.SYNC


class TaskExecutionError(GatewayError):
    """A task action or its reasoning output failed."""
    kind = ErrorKind.TASK_EXECUTION


class NotRollbackable(GatewayError):
    kind = ErrorKind.NOT_ROLLBACKABLE


class AlreadyRolledBack(GatewayError):
    kind = ErrorKind.ALREADY_ROLLED_BACK


class InvalidTransition(GatewayError):
    """Task was not in the state the operation requires."""
    kind = ErrorKind.INVALID_TRANSITION


class NotFound(GatewayError):
    kind = ErrorKind.NOT_FOUND
