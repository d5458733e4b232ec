"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class TidalQueueError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(TidalQueueError):
    """Raised for issues related to configuration loading or validation."""


class StoreUnavailableError(TidalQueueError):
    """Raised by a store backend when it cannot be reached."""


class JobRecordError(TidalQueueError):
    """Raised when a persisted job record cannot be decoded or fails validation."""


class InvalidTransitionError(TidalQueueError):
    """Raised when a status change is not allowed by the job lifecycle."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            f"Job '{job_id}' cannot move from '{current}' to '{requested}'."
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class OperationCancelledError(TidalQueueError):
    """Raised when a cooperative cancellation token has been signalled."""


class UploadError(TidalQueueError):
    """Base class for failures of the upload transport."""


class InvalidChunkParametersError(UploadError, ValueError):
    """Raised when chunk count or chunk size is not a positive finite number."""


class TransportError(UploadError):
    """
    Raised when an HTTP request fails after exhausting its retries.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ChunkUploadError(TransportError):
    """Raised when the server rejects an individual chunk."""


class UploadIncompleteError(UploadError):
    """Raised when the final chunk is not acknowledged with success."""


class UploadCancelledError(UploadError, OperationCancelledError):
    """Raised when an upload is aborted through its cancellation token."""
