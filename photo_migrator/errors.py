"""Error taxonomy shared by the store, the remote client and the orchestrator."""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT_NETWORK = "transient-network"
    TRANSIENT_RATE_LIMIT = "transient-rate-limit"
    AUTH_EXPIRED = "auth-expired"
    AUTH_REVOKED = "auth-revoked"
    INVALID_TRANSFER_TOKEN = "invalid-transfer-token"
    CLIENT_ERROR = "client-error"
    LOCAL_MISSING = "local-missing"
    INSUFFICIENT_SPACE = "insufficient-space"
    DUPLICATE = "duplicate"


class MigratorError(Exception):
    """Base class for classified failures."""
    kind: ErrorKind = ErrorKind.CLIENT_ERROR
    retryable: bool = False

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or self.kind.value)
        self.status_code = status_code

    def describe(self) -> str:
        """Format for the item's last_error column."""
        return f"{self.kind.value}: {self}"


class TransientNetworkError(MigratorError):
    """Connection failure, timeout or 5xx."""
    kind = ErrorKind.TRANSIENT_NETWORK
    retryable = True


class RateLimitedError(MigratorError):
    kind = ErrorKind.TRANSIENT_RATE_LIMIT
    retryable = True

    def __init__(self, message: str = "", status_code: Optional[int] = 429, retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class AuthExpiredError(MigratorError):
    """Remote rejected the bearer token (401)."""
    kind = ErrorKind.AUTH_EXPIRED
    retryable = True


class ReauthenticationRequired(MigratorError):
    """Refresh grant is invalid or revoked; uploads halt until login."""
    kind = ErrorKind.AUTH_REVOKED


class InvalidTransferTokenError(MigratorError):
    """Commit refused the transfer token; bytes must be sent again."""
    kind = ErrorKind.INVALID_TRANSFER_TOKEN
    retryable = True


class ClientFaultError(MigratorError):
    """Malformed request, unsupported format, size over limit."""
    kind = ErrorKind.CLIENT_ERROR


class LocalMissingError(MigratorError):
    kind = ErrorKind.LOCAL_MISSING


class InsufficientSpaceError(MigratorError):
    kind = ErrorKind.INSUFFICIENT_SPACE


class InvalidTransitionError(ValueError):
    """Requested status transition is not part of the item lifecycle."""
