"""
Pipeline Errors

Error taxonomy shared by storage, processing, queue and packaging code.
Transient errors are worth retrying; the rest will fail the same way again.
"""


class PipelineError(Exception):
    """Base class for all worker errors."""

    retriable = False


class TransientError(PipelineError):
    """Network blip, backend 5xx or timeout."""

    retriable = True


class TransientStorageError(TransientError):
    """Object storage was unreachable or answered with a server error."""


class TransientNetworkError(TransientError):
    """An outbound HTTP call (record store, logo fetch) failed transiently."""


class StorageError(PipelineError):
    """Object storage rejected the request."""


class NotFoundError(StorageError):
    """The requested object or multipart upload does not exist."""

    def __init__(self, key: str, message: str | None = None):
        self.key = key
        super().__init__(message or f"Object not found: {key}")


class ValidationError(PipelineError):
    """Input rejected before any work was done (unsafe URL, bad config)."""


class ProcessingError(PipelineError):
    """The image could not be decoded or transformed."""
