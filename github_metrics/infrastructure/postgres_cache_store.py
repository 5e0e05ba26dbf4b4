"""PostgreSQL implementation of the durable cache store."""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
import psycopg2
from psycopg2.extras import Json
from github_metrics.domain.cache_interface import ICacheDatabase, ICacheStore
from github_metrics.domain.errors import (
    CacheInitializationError,
    CacheReadError,
    CacheWriteError,
    RunLockError
)
from github_metrics.domain.models import CacheEntry, Dataset, utc_now


logger = logging.getLogger(__name__)

RUN_LOCK_NAME = "github_metrics_report_run"


class PostgresCacheStore(ICacheStore):
    """Key-value store backed by one PostgreSQL table.

    Uses UPSERT so re-fetching a key overwrites the previous value in place.
    Every mutating call commits before returning.
    """

    def __init__(self, conn, table: str, clock: Callable[[], datetime] = utc_now):
        """Initialize the namespace store.

        Args:
            conn: Open psycopg2 connection shared by all namespaces
            table: Table holding this namespace
            clock: Returns the current aware UTC datetime
        """
        self._conn = conn
        self._table = table
        self._clock = clock
        self._memory: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def get_entry(self, key: str, include_expired: bool = False) -> Optional[CacheEntry]:
        entry = self._memory.get(key)
        if entry is None:
            try:
                entry = self._read(key)
            except CacheReadError as e:
                logger.error(f"Cache read failed for {self._table}[{key}], treating as miss: {e}")
                return None

        if entry is None:
            logger.debug(f"Cache miss: {self._table}[{key}]")
            return None
        if not include_expired and entry.is_expired(self._clock()):
            logger.debug(f"Cache entry expired: {self._table}[{key}]")
            return None
        return entry

    def get_persisted(self, key: str) -> Optional[CacheEntry]:
        return self._read(key)

    def _rollback(self) -> None:
        # A dropped connection fails the rollback too; the original error wins.
        try:
            self._conn.rollback()
        except psycopg2.Error as e:
            logger.error(f"Rollback on {self._table} failed: {e}")

    def _query_one(self, query: str, params: tuple = ()) -> Optional[tuple]:
        """Run a read-only statement and return its first row.

        Raises:
            CacheReadError: If the statement or the connection fails
        """
        try:
            cursor = self._conn.cursor()
        except psycopg2.Error as e:
            raise CacheReadError(str(e)) from e
        try:
            cursor.execute(query, params)
            row = cursor.fetchone()
            self._conn.commit()
            return row
        except psycopg2.Error as e:
            self._rollback()
            raise CacheReadError(str(e)) from e
        finally:
            cursor.close()

    def _read(self, key: str) -> Optional[CacheEntry]:
        row = self._query_one(
            f"SELECT value, created_at, expires_at FROM {self._table} WHERE key = %s",
            (key,)
        )
        if row is None:
            return None
        return CacheEntry(key=key, value=row[0], created_at=row[1], expires_at=row[2])

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        if value is None:
            raise ValueError("None cannot be cached; it is indistinguishable from a miss")

        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds else None

        try:
            self._execute(
                f"""
                INSERT INTO {self._table} (key, value, created_at, expires_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (key)
                DO UPDATE SET
                    value = EXCLUDED.value,
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at
                """,
                (key, Json(value), now, expires_at)
            )
        except CacheWriteError as e:
            logger.error(
                f"Cache write failed for {self._table}[{key}], keeping value in memory: {e}"
            )
            self._memory[key] = CacheEntry(key=key, value=value, created_at=now, expires_at=expires_at)
            return False

        self._memory.pop(key, None)
        return True

    def _execute(self, query: str, params: tuple = ()) -> int:
        """Run a mutating statement in its own transaction.

        Returns:
            Number of affected rows

        Raises:
            CacheWriteError: If the statement fails
        """
        try:
            cursor = self._conn.cursor()
        except psycopg2.Error as e:
            raise CacheWriteError(str(e)) from e
        try:
            cursor.execute(query, params)
            rowcount = cursor.rowcount
            self._conn.commit()
            return rowcount
        except psycopg2.Error as e:
            self._rollback()
            raise CacheWriteError(str(e)) from e
        finally:
            cursor.close()

    def delete(self, key: str) -> bool:
        existed = self._memory.pop(key, None) is not None
        removed = self._execute(f"DELETE FROM {self._table} WHERE key = %s", (key,))
        return existed or removed > 0

    def clear(self) -> int:
        self._memory.clear()
        removed = self._execute(f"DELETE FROM {self._table}")
        logger.info(f"Cleared {removed} entries from {self._table}")
        return removed

    def sweep_expired(self) -> int:
        now = self._clock()
        self._memory = {
            key: entry for key, entry in self._memory.items() if not entry.is_expired(now)
        }
        try:
            removed = self._execute(
                f"DELETE FROM {self._table} WHERE expires_at IS NOT NULL AND expires_at <= %s",
                (now,)
            )
        except CacheWriteError as e:
            logger.error(f"Sweep of {self._table} failed: {e}")
            return 0
        if removed:
            logger.info(f"Swept {removed} expired entries from {self._table}")
        return removed

    def count(self, include_expired: bool = True) -> int:
        query = f"SELECT COUNT(*) FROM {self._table}"
        params: tuple = ()
        if not include_expired:
            query += " WHERE expires_at IS NULL OR expires_at > %s"
            params = (self._clock(),)
        return self._query_one(query, params)[0]


class PostgresCacheDatabase(ICacheDatabase):
    """PostgreSQL database holding every dataset namespace.

    The run lock is a session-level advisory lock, so it disappears with the
    connection if the process dies.
    """

    def __init__(self, connection_string: str, clock: Callable[[], datetime] = utc_now):
        """Initialize PostgreSQL connection.

        Args:
            connection_string: PostgreSQL connection string
            clock: Returns the current aware UTC datetime

        Raises:
            CacheInitializationError: If the connection cannot be opened
        """
        self._clock = clock
        self._conn = None
        self._namespaces: Dict[Dataset, PostgresCacheStore] = {}
        self._lock_held = False
        try:
            self._conn = psycopg2.connect(connection_string)
            self._conn.autocommit = False
        except psycopg2.Error as e:
            raise CacheInitializationError(f"Failed to connect to PostgreSQL: {e}") from e
        logger.info("Connected to PostgreSQL database")

    def create_schema(self) -> None:
        """Create one table per dataset with an index on expires_at."""
        cursor = self._conn.cursor()
        try:
            for dataset in Dataset:
                table = dataset.table_name
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        key TEXT PRIMARY KEY,
                        value JSONB NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL,
                        expires_at TIMESTAMPTZ
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_expires_at
                    ON {table}(expires_at)
                """)
            self._conn.commit()
            logger.info("Cache schema created successfully")
        except psycopg2.Error as e:
            try:
                self._conn.rollback()
            except psycopg2.Error:
                pass
            raise CacheInitializationError(f"Error creating cache schema: {e}") from e
        finally:
            cursor.close()

    def namespace(self, dataset: Dataset) -> PostgresCacheStore:
        store = self._namespaces.get(dataset)
        if store is None:
            store = PostgresCacheStore(self._conn, dataset.table_name, self._clock)
            self._namespaces[dataset] = store
        return store

    def acquire_run_lock(self, owner: str) -> None:
        try:
            cursor = self._conn.cursor()
            try:
                cursor.execute("SELECT pg_try_advisory_lock(hashtext(%s))", (RUN_LOCK_NAME,))
                acquired = cursor.fetchone()[0]
                self._conn.commit()
            finally:
                cursor.close()
        except psycopg2.Error as e:
            raise RunLockError(f"Could not take the PostgreSQL advisory lock: {e}") from e
        if not acquired:
            raise RunLockError("Another report run holds the PostgreSQL advisory lock")
        self._lock_held = True
        logger.info(f"Acquired run lock as {owner}")

    def release_run_lock(self) -> None:
        if not self._lock_held or self._conn is None:
            return
        try:
            cursor = self._conn.cursor()
            try:
                cursor.execute("SELECT pg_advisory_unlock(hashtext(%s))", (RUN_LOCK_NAME,))
                self._conn.commit()
            finally:
                cursor.close()
            logger.info("Released run lock")
        except psycopg2.Error as e:
            # The session lock dies with the connection.
            logger.error(f"Failed to release run lock: {e}")
        finally:
            self._lock_held = False

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self.release_run_lock()
            self._conn.close()
            self._conn = None
            logger.info("Closed PostgreSQL connection")
