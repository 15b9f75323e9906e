"""Error taxonomy shared by the normalizer, extractor and ingestion jobs.

Every error raised on purpose by this package derives from ``IngestError``
and carries an ``ErrorKind``. The ingestion worker uses the kind to decide
whether to retry a job and reports it to callers polling the job, so a
failed import says *why* it failed (timeout, size, unsupported type) rather
than a generic message.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Classification of failures for retry decisions and caller messages."""
    VALIDATION = "validation"      # malformed input - never retried
    TIMEOUT = "timeout"            # budget exceeded - caller may resubmit
    SIZE_LIMIT = "size_limit"      # payload over configured cap
    PROVIDER = "provider"          # an external source failed
    NETWORK = "network"            # connection/read failures - transient
    RATE_LIMIT = "rate_limit"      # 429 from a provider - transient
    INVARIANT = "invariant"        # internal bug signal
    UNKNOWN = "unknown"


class IngestError(Exception):
    """Base class for expected failures in the ingestion core."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def describe(self) -> str:
        """Human-readable ``kind: message`` string stored on failed jobs."""
        return f"{self.kind.value}: {self.message}"


class InvalidInputError(IngestError):
    """Malformed caller input, e.g. an unsupported file extension."""
    kind = ErrorKind.VALIDATION


class JobStateError(InvalidInputError):
    """Illegal job transition requested (e.g. resubmitting a completed job)."""


class OperationTimeoutError(IngestError):
    """An extraction pass or provider call exceeded its wall-clock budget."""
    kind = ErrorKind.TIMEOUT


class SizeLimitError(IngestError):
    """Payload or text exceeds the configured cap for its format."""
    kind = ErrorKind.SIZE_LIMIT

    def __init__(self, message: str, code: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.code = code


class ProviderError(IngestError):
    """One (or, when aggregated, every) external search provider failed."""
    kind = ErrorKind.PROVIDER

    def __init__(self, message: str, provider: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.provider = provider


class InvariantViolation(IngestError):
    """A dedup or extraction result broke one of its own guarantees.

    Indicates a bug in this package, never caller misuse. It is not retried
    and the data is never silently repaired.
    """
    kind = ErrorKind.INVARIANT
