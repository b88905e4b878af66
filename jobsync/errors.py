"""Exception hierarchy for the synchronization engine."""


class SyncError(Exception):
    """Base class for all synchronization errors."""

    pass


class TransientNetworkError(SyncError):
    """Raised for timeouts and connection failures that are safe to retry."""

    pass


class RateLimitError(SyncError):
    """Raised when the target rejects a call because the rate budget is spent."""

    def __init__(self, message: str, reset_after: float | None = None):
        super().__init__(message)
        self.reset_after = reset_after


class TargetValidationError(SyncError):
    """Raised when the target rejects a payload."""

    def __init__(self, message: str, detail: object | None = None):
        super().__init__(message)
        self.detail = detail


class NotFoundError(SyncError):
    """Raised when an entity vanished between snapshot and update."""

    pass


class PersistenceError(SyncError):
    """Raised when the sync state cannot be read or written."""

    pass


class SourceError(SyncError):
    """Raised when the source system cannot be queried."""

    pass


class TargetError(SyncError):
    """Raised for non-retryable target failures (auth, unexpected status)."""

    pass


class SyncInProgressError(SyncError):
    """Raised when a run is requested while another run is executing."""

    pass


class SyncCancelledError(SyncError):
    """Raised when an operator cancels a run."""

    pass
