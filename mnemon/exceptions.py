"""Custom exception classes for Mnemon."""

from typing import Optional


class MnemonError(RuntimeError):
    """Base class for errors raised by the memory subsystem."""


class ConfigurationError(MnemonError):
    """Raised when the subsystem is missing configuration it cannot run without.

    Missing provider credentials are the common case. The queue worker treats
    this as terminal and never retries the job, regardless of remaining attempts.
    """


class ProviderError(MnemonError):
    """Raised when an LLM or embedding provider call fails in transport.

    Retryable: the queue worker reschedules the job with backoff.

    Attributes:
        model: Model string the request was sent to (if known)
        status_code: HTTP status code reported by the provider (if any)
    """

    def __init__(self, message: str, model: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.model = model
        self.status_code = status_code


class DatabaseLockedError(MnemonError):
    """Raised when the DuckDB file is locked by another process.

    DuckDB allows one writing process per file, so this usually means a
    ``mnemon worker`` is running against the same database.

    Attributes:
        db_path: Path of the database that could not be opened
    """

    def __init__(self, message: str, db_path: Optional[str] = None):
        super().__init__(message)
        self.db_path = db_path
