import enum
import logging

logger = logging.getLogger(__name__)


class FailureKind(str, enum.Enum):
    TRANSIENT_NETWORK = "transient_network"
    VALIDATION_REJECTED = "validation_rejected"
    CONFLICT_OR_GONE = "conflict_or_gone"
    CHANNEL_UNAVAILABLE = "channel_unavailable"
    UNEXPECTED = "unexpected"


class SyncError(Exception):
    """Base class for classified synchronization failures."""

    def __init__(
        self,
        message="An unexpected synchronization error occurred.",
        kind: FailureKind = FailureKind.UNEXPECTED,
        status_code: int | None = None,
    ):
        self.message = message
        self.kind = kind
        self.status_code = status_code
        super().__init__(self.message)


class TransientNetworkError(SyncError):
    """The query service could not be reached or failed to answer."""

    def __init__(self, message="The chat service could not be reached.", status_code=None):
        super().__init__(message, FailureKind.TRANSIENT_NETWORK, status_code)


class ValidationRejectedError(SyncError):
    """Rejected before (or by) the service because the input is unusable."""

    def __init__(self, message="The request was rejected as invalid.", status_code=None):
        super().__init__(message, FailureKind.VALIDATION_REJECTED, status_code)


class ConflictOrGoneError(SyncError):
    """The targeted conversation, message or participant no longer exists."""

    def __init__(self, message="The target no longer exists.", status_code=None):
        super().__init__(message, FailureKind.CONFLICT_OR_GONE, status_code)


class ChannelUnavailableError(SyncError):
    def __init__(self, message="The push channel is unavailable."):
        super().__init__(message, FailureKind.CHANNEL_UNAVAILABLE)


def error_for_status(status_code: int, message: str) -> SyncError:
    """Maps a query service HTTP status to its failure class."""
    if status_code in (404, 409, 410):
        return ConflictOrGoneError(message, status_code=status_code)
    if status_code in (400, 422):
        return ValidationRejectedError(message, status_code=status_code)
    if status_code >= 500:
        return TransientNetworkError(message, status_code=status_code)
    logger.warning(f"Unclassified query service status {status_code}: {message}")
    return SyncError(message, FailureKind.UNEXPECTED, status_code)
