"""Exception hierarchy shared by acquisition, storage and classification."""
from __future__ import annotations


class LeakBenchError(Exception):
    """Base class for all errors raised by leakbench."""


class TransientIOError(LeakBenchError, IOError):
    """Serial or store I/O failed. Callers decide whether to re-trigger."""


class CommandFailedError(TransientIOError):
    """A single-byte device command could not be written."""


class ConnectionLostError(TransientIOError):
    """The device link dropped while the read loop was active."""


class StoreUnavailableError(TransientIOError):
    """The persistence backend rejected or could not serve a request."""


class PreconditionError(LeakBenchError, ValueError):
    """Input data does not allow the requested operation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class MissingGuidelineError(PreconditionError):
    pass


class MissingSensorConfigError(PreconditionError):
    pass


class InsufficientSamplesError(PreconditionError):
    pass


class CorpusTooSmallError(PreconditionError):
    pass


class MissingModelError(PreconditionError):
    pass


class ConcurrencyConflictError(LeakBenchError, RuntimeError):
    """A mutually exclusive resource is already taken. Requests are not queued."""


class SessionAlreadyRunningError(ConcurrencyConflictError):
    pass


class TrainingInProgressError(ConcurrencyConflictError):
    pass


class DeviceBusyError(ConcurrencyConflictError):
    pass


class ClassificationInProgressError(ConcurrencyConflictError):
    pass
