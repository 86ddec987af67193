"""Custom exceptions for the fsstream package."""


class FSStreamError(Exception):
    """Base exception for all fsstream errors."""
    pass


class InvalidArgumentError(FSStreamError, ValueError):
    """Bad watch set, checkpoint, latency or flags passed to an operation."""
    pass


class ResourceExhaustedError(FSStreamError):
    """The native layer could not allocate a stream or a watch."""
    pass


class InvalidStateError(FSStreamError):
    """Operation on a disposed, failed or unknown stream handle."""
    pass


class InternalInvariantViolation(FSStreamError):
    """The native layer delivered a batch that breaks its own contract."""
    pass


class SinkError(FSStreamError):
    """A consumer sink raised while processing a batch."""

    def __init__(self, message: str, batch=None, cause: BaseException = None):
        super().__init__(message)
        self.batch = batch
        self.cause = cause


class JournalError(FSStreamError):
    """Error reading or writing the event journal."""
    pass
