"""
etl/errors.py – Error hierarchy shared by every layer of the job.

    RatesSyncError
    ├── ConfigError
    ├── CancelledError
    ├── PipelineError          (orchestrator: which step aborted the cycle)
    ├── RateSourceError
    │   ├── TransportError
    │   ├── RemoteError
    │   └── DecodeError
    └── RateStoreError
        ├── QueryError
        ├── WriteError
        ├── SyncError
        └── CloseError
"""

from typing import Optional, Sequence


class RatesSyncError(Exception):
    """Base class for every error raised by this project."""


class ConfigError(RatesSyncError):
    def __init__(self, message: str, variable: Optional[str] = None):
        super().__init__(message)
        self.variable = variable


class CancelledError(RatesSyncError):
    """The cycle deadline passed before or during a step."""


# ---------------------------------------------------------------------------
# Rate Source
# ---------------------------------------------------------------------------

class RateSourceError(RatesSyncError):
    pass


class TransportError(RateSourceError):
    pass


class RemoteError(RateSourceError):
    """The pricing service answered, but not with a usable success."""

    def __init__(self, message: str, status: int, body: str):
        super().__init__(f"{message}: {body}")
        self.status = status
        self.body = body


class DecodeError(RateSourceError):
    pass


# ---------------------------------------------------------------------------
# Rate Store
# ---------------------------------------------------------------------------

class RateStoreError(RatesSyncError):
    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        code: Optional[str] = None,
        applied: Sequence[str] = (),
    ):
        super().__init__(message)
        self.table = table
        self.code = code
        # Codes whose write is durable despite the failure.
        self.applied = tuple(applied)


class QueryError(RateStoreError):
    pass


class WriteError(RateStoreError):
    pass


class SyncError(RateStoreError):
    pass


class CloseError(RateStoreError):
    pass


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class PipelineError(RatesSyncError):
    """A fatal step failure; `cause` is the underlying error."""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"{step} step failed: {cause}")
        self.step = step
        self.cause = cause
