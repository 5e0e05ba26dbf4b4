"""Error taxonomy shared by the cache, the fetch path and the migration tool."""
from datetime import datetime
from typing import Optional


class GitHubMetricsError(Exception):
    """Base class for all errors raised by this package."""
    pass


class CacheInitializationError(GitHubMetricsError):
    """The durable store could not be opened. Fatal for the whole run."""
    pass


class CacheReadError(GitHubMetricsError):
    """A storage engine failure while reading. Callers degrade to a miss."""
    pass


class CacheWriteError(GitHubMetricsError):
    """A storage engine failure while writing. Callers keep the value in memory."""
    pass


class RunLockError(GitHubMetricsError):
    """Another report run currently holds the run lock."""
    pass


class QuotaExceeded(GitHubMetricsError):
    """The upstream quota is exhausted.

    Args:
        message: Human readable description
        reset_at: When the quota resets, if known
    """

    def __init__(self, message: str, reset_at: Optional[datetime] = None):
        super().__init__(message)
        self.reset_at = reset_at


class TransientNetworkError(GitHubMetricsError):
    """A failure worth retrying with backoff (5xx, resets, timeouts)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PermanentQueryError(GitHubMetricsError):
    """The upstream API rejected the query. Retrying will not help."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class MigrationError(GitHubMetricsError):
    """A single key could not be migrated from the legacy cache."""
    pass
