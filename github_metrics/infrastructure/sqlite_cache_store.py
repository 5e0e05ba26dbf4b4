"""SQLite implementation of the durable cache store.

One database file holds one table per dataset. Values are stored as JSON
text; timestamps as epoch seconds so expiry comparisons stay numeric.
"""
import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union
from github_metrics.domain.cache_interface import ICacheDatabase, ICacheStore
from github_metrics.domain.errors import (
    CacheInitializationError,
    CacheReadError,
    CacheWriteError,
    RunLockError
)
from github_metrics.domain.models import CacheEntry, Dataset, utc_now


logger = logging.getLogger(__name__)

RUN_LOCK_NAME = "report_run"


def _to_epoch(value: datetime) -> float:
    return value.timestamp()


def _from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


class SQLiteCacheStore(ICacheStore):
    """Key-value store backed by one SQLite table.

    Values whose write failed are kept in memory for the lifetime of the
    instance, so the rest of the run still sees them.
    """

    def __init__(
        self,
        connection: Callable[[], sqlite3.Connection],
        table: str,
        clock: Callable[[], datetime] = utc_now
    ):
        """Initialize the namespace store.

        Args:
            connection: Returns the shared open connection
            table: Table holding this namespace
            clock: Returns the current aware UTC datetime
        """
        self._connection = connection
        self._table = table
        self._clock = clock
        self._memory: Dict[str, CacheEntry] = {}

    @property
    def table(self) -> str:
        return self._table

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

    def _read(self, key: str) -> Optional[CacheEntry]:
        try:
            row = self._connection().execute(
                f"SELECT value, created_at, expires_at FROM {self._table} WHERE key = ?",
                (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise CacheReadError(str(e)) from e

        if row is None:
            return None

        try:
            value = json.loads(row[0])
        except ValueError as e:
            raise CacheReadError(f"Corrupt value: {e}") from e

        return CacheEntry(
            key=key,
            value=value,
            created_at=_from_epoch(row[1]),
            expires_at=_from_epoch(row[2])
        )

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        if value is None:
            raise ValueError("None cannot be cached; it is indistinguishable from a miss")

        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        serialized = json.dumps(value)

        try:
            self._connection().execute(
                f"""
                INSERT INTO {self._table} (key, value, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET
                    value = excluded.value,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
                """,
                (key, serialized, _to_epoch(now), _to_epoch(expires_at) if expires_at else None)
            )
        except sqlite3.Error as e:
            error = CacheWriteError(str(e))
            logger.error(
                f"Cache write failed for {self._table}[{key}], keeping value in memory: {error}"
            )
            self._memory[key] = CacheEntry(key=key, value=value, created_at=now, expires_at=expires_at)
            return False

        self._memory.pop(key, None)
        return True

    def delete(self, key: str) -> bool:
        existed = self._memory.pop(key, None) is not None
        try:
            cursor = self._connection().execute(
                f"DELETE FROM {self._table} WHERE key = ?", (key,)
            )
        except sqlite3.Error as e:
            raise CacheWriteError(str(e)) from e
        return existed or cursor.rowcount > 0

    def clear(self) -> int:
        self._memory.clear()
        try:
            cursor = self._connection().execute(f"DELETE FROM {self._table}")
        except sqlite3.Error as e:
            raise CacheWriteError(str(e)) from e
        logger.info(f"Cleared {cursor.rowcount} entries from {self._table}")
        return cursor.rowcount

    def sweep_expired(self) -> int:
        now = self._clock()
        self._memory = {
            key: entry for key, entry in self._memory.items() if not entry.is_expired(now)
        }
        try:
            cursor = self._connection().execute(
                f"DELETE FROM {self._table} WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (_to_epoch(now),)
            )
        except sqlite3.Error as e:
            logger.error(f"Sweep of {self._table} failed: {e}")
            return 0
        if cursor.rowcount:
            logger.info(f"Swept {cursor.rowcount} expired entries from {self._table}")
        return cursor.rowcount

    def count(self, include_expired: bool = True) -> int:
        query = f"SELECT COUNT(*) FROM {self._table}"
        params: tuple = ()
        if not include_expired:
            query += " WHERE expires_at IS NULL OR expires_at > ?"
            params = (_to_epoch(self._clock()),)
        try:
            return self._connection().execute(query, params).fetchone()[0]
        except sqlite3.Error as e:
            raise CacheReadError(str(e)) from e


class SQLiteCacheDatabase(ICacheDatabase):
    """SQLite database holding every dataset namespace.

    Uses WAL mode so a reader (e.g. the stats script) does not block the
    running report. The connection is opened once and must be closed by the
    owner of the run.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        clock: Callable[[], datetime] = utc_now,
        lock_stale_hours: float = 6
    ):
        """Open (and create if needed) the cache database.

        Args:
            db_path: Path to the database file, or ":memory:"
            clock: Returns the current aware UTC datetime
            lock_stale_hours: Age after which a run lock left behind by a
                crashed run is taken over

        Raises:
            CacheInitializationError: If the database cannot be opened
        """
        self._db_path = str(db_path)
        self._clock = clock
        self._lock_stale_seconds = lock_stale_hours * 3600
        self._conn: Optional[sqlite3.Connection] = None
        self._namespaces: Dict[Dataset, SQLiteCacheStore] = {}
        self._lock_owner: Optional[str] = None

        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self._db_path,
                isolation_level=None,
                check_same_thread=False
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except (sqlite3.Error, OSError) as e:
            raise CacheInitializationError(
                f"Failed to open SQLite cache at {self._db_path}: {e}"
            ) from e

        try:
            self.create_schema()
        except CacheInitializationError:
            self.close()
            raise
        logger.info(f"Opened SQLite cache at {self._db_path}")

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Cache database is closed")
        return self._conn

    def create_schema(self) -> None:
        try:
            conn = self._connection()
            for dataset in Dataset:
                table = dataset.table_name
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        created_at REAL NOT NULL,
                        expires_at REAL
                    )
                """)
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_expires_at ON {table}(expires_at)"
                )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_locks (
                    name TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at REAL NOT NULL
                )
            """)
        except sqlite3.Error as e:
            raise CacheInitializationError(f"Failed to create cache schema: {e}") from e

    def namespace(self, dataset: Dataset) -> SQLiteCacheStore:
        store = self._namespaces.get(dataset)
        if store is None:
            store = SQLiteCacheStore(self._connection, dataset.table_name, self._clock)
            self._namespaces[dataset] = store
        return store

    def acquire_run_lock(self, owner: str) -> None:
        conn = self._connection()
        now = _to_epoch(self._clock())
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute(
                "SELECT owner, acquired_at FROM run_locks WHERE name = ?",
                (RUN_LOCK_NAME,)
            ).fetchone()
            if row is not None and row[0] != owner:
                age = now - row[1]
                if age < self._lock_stale_seconds:
                    raise RunLockError(
                        f"Run lock held by {row[0]} since {_from_epoch(row[1]).isoformat()}"
                    )
                logger.warning(f"Taking over stale run lock held by {row[0]} ({age:.0f}s old)")
            conn.execute(
                "INSERT OR REPLACE INTO run_locks (name, owner, acquired_at) VALUES (?, ?, ?)",
                (RUN_LOCK_NAME, owner, now)
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        self._lock_owner = owner
        logger.info(f"Acquired run lock as {owner}")

    def release_run_lock(self) -> None:
        if self._lock_owner is None or self._conn is None:
            return
        try:
            self._conn.execute(
                "DELETE FROM run_locks WHERE name = ? AND owner = ?",
                (RUN_LOCK_NAME, self._lock_owner)
            )
            logger.info(f"Released run lock held by {self._lock_owner}")
        except sqlite3.Error as e:
            logger.error(f"Failed to release run lock: {e}")
        finally:
            self._lock_owner = None

    def close(self) -> None:
        """Release the run lock if held and close the connection."""
        if self._conn is None:
            return
        self.release_run_lock()
        self._conn.close()
        self._conn = None
        logger.info("Closed SQLite cache")
