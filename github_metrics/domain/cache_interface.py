"""Cache storage interfaces (ports) for the durable key-value store.

These are the ports in hexagonal architecture that the infrastructure layer
implements (SQLite and PostgreSQL).
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from github_metrics.domain.models import CacheEntry, Dataset


class ICacheStore(ABC):
    """Key-value store for a single dataset namespace.

    Writes are committed before ``set`` returns, so a ``get`` issued after
    ``set`` returns always observes the write.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None when missing or expired.

        Storage failures are logged and reported as a miss.
        """
        pass

    @abstractmethod
    def get_entry(self, key: str, include_expired: bool = False) -> Optional[CacheEntry]:
        """Return the full entry.

        Args:
            key: Cache key
            include_expired: Also return entries whose TTL has elapsed but
                which have not been swept yet

        Returns:
            The entry, or None
        """
        pass

    @abstractmethod
    def get_persisted(self, key: str) -> Optional[CacheEntry]:
        """Return the durably stored entry, ignoring values held in memory.

        Raises:
            CacheReadError: If the storage engine fails
        """
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Insert or overwrite a value.

        Args:
            key: Cache key
            value: JSON-serializable value; None is not allowed
            ttl_seconds: Seconds until expiry; None or 0 never expires

        Returns:
            True if the value was durably written, False if it is only held
            in memory for the rest of the run
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove one entry. Returns whether an entry existed."""
        pass

    @abstractmethod
    def clear(self) -> int:
        """Remove every entry in the namespace. Returns the number removed."""
        pass

    @abstractmethod
    def sweep_expired(self) -> int:
        """Physically remove expired entries. Returns the number removed."""
        pass

    @abstractmethod
    def count(self, include_expired: bool = True) -> int:
        """Number of entries in the namespace."""
        pass


class ICacheDatabase(ABC):
    """One physical store holding a namespace (table) per dataset."""

    @abstractmethod
    def create_schema(self) -> None:
        """Create every dataset table and index if missing."""
        pass

    @abstractmethod
    def namespace(self, dataset: Dataset) -> ICacheStore:
        """Return the store for one dataset."""
        pass

    def sweep_expired(self) -> Dict[Dataset, int]:
        """Sweep every dataset namespace."""
        return {dataset: self.namespace(dataset).sweep_expired() for dataset in Dataset}

    @abstractmethod
    def acquire_run_lock(self, owner: str) -> None:
        """Take the run-level advisory lock.

        Raises:
            RunLockError: If another run holds the lock
        """
        pass

    @abstractmethod
    def release_run_lock(self) -> None:
        """Release the run lock if this process holds it."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        pass
