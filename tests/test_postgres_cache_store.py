"""Tests for the PostgreSQL cache store, against a scripted psycopg2 connection."""
from datetime import datetime, timedelta, timezone
import psycopg2
import pytest
from conftest import NOW, FakeGitHubClient, SleepRecorder
from github_metrics.application.fetch_orchestrator import FetchOrchestrator
from github_metrics.application.rate_limit_gate import RateLimitGate
from github_metrics.domain.cache_interface import ICacheDatabase
from github_metrics.domain.errors import CacheReadError, CacheWriteError, RunLockError
from github_metrics.domain.models import Page
from github_metrics.domain.ttl_policy import TTLPolicy
from github_metrics.infrastructure import postgres_cache_store
from github_metrics.infrastructure.postgres_cache_store import (
    PostgresCacheDatabase,
    PostgresCacheStore
)


class FakeCursor:
    def __init__(self, conn):
        self._conn = conn
        self._row = None
        self.rowcount = 0

    def execute(self, query, params=()):
        self._conn.queries.append((" ".join(query.split()), params))
        if self._conn.execute_error is not None:
            raise self._conn.execute_error
        self._row = self._conn.rows.pop(0) if self._conn.rows else None
        self.rowcount = self._conn.rowcount

    def fetchone(self):
        return self._row

    def close(self):
        pass


class FakeConnection:
    """Records statements and returns scripted rows, one per execute."""

    def __init__(self, rows=None, rowcount=1, execute_error=None, rollback_error=None):
        self.rows = list(rows or [])
        self.rowcount = rowcount
        self.execute_error = execute_error
        self.rollback_error = rollback_error
        self.queries = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self):
        if self.closed:
            raise psycopg2.InterfaceError("connection already closed")
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1
        if self.rollback_error is not None:
            raise self.rollback_error

    def close(self):
        self.closed = True


def dropped_connection():
    """A connection whose server went away mid-statement."""
    return FakeConnection(
        execute_error=psycopg2.OperationalError("server closed the connection unexpectedly"),
        rollback_error=psycopg2.InterfaceError("connection already closed")
    )


def make_store(conn, clock=lambda: NOW):
    return PostgresCacheStore(conn, "prs_cache", clock)


def test_set_upserts_json_with_expiry():
    """Test that set issues an upsert with the JSON value and expiry."""
    conn = FakeConnection()
    store = make_store(conn)

    assert store.set("acme-1", [{"id": "PR_1"}], ttl_seconds=3600) is True

    query, params = conn.queries[0]
    assert query.startswith("INSERT INTO prs_cache")
    assert "ON CONFLICT (key) DO UPDATE" in query
    assert params[0] == "acme-1"
    assert params[1].adapted == [{"id": "PR_1"}]
    assert params[2] == NOW
    assert params[3] == NOW + timedelta(hours=1)
    assert conn.commits == 1


def test_perpetual_set_has_no_expiry():
    conn = FakeConnection()

    make_store(conn).set("acme-1", [], ttl_seconds=0)

    assert conn.queries[0][1][3] is None


def test_get_returns_live_row():
    """Test reading a stored row."""
    conn = FakeConnection(rows=[([{"id": "PR_1"}], NOW, NOW + timedelta(hours=1))])

    assert make_store(conn).get("acme-1") == [{"id": "PR_1"}]


def test_expired_row_is_a_miss_but_available_for_fallback():
    """Test that an expired row is hidden unless explicitly requested."""
    row = (["stale"], NOW - timedelta(hours=2), NOW - timedelta(hours=1))
    conn = FakeConnection(rows=[row, row])
    store = make_store(conn)

    assert store.get("acme-1") is None
    assert store.get_entry("acme-1", include_expired=True).value == ["stale"]


def test_dropped_connection_on_read_is_a_miss():
    """Test that a failed rollback does not turn a read error into a crash."""
    conn = dropped_connection()

    assert make_store(conn).get("acme-1") is None
    assert conn.rollbacks == 1


def test_dropped_connection_on_write_keeps_value_in_memory():
    """Test that a failed write is reported and served from memory."""
    conn = dropped_connection()
    store = make_store(conn)

    assert store.set("acme-1", [1]) is False
    assert store.get("acme-1") == [1]


def test_closed_connection_degrades():
    """Test that a connection closed before the statement is handled too."""
    conn = FakeConnection()
    conn.closed = True
    store = make_store(conn)

    assert store.get("acme-1") is None
    assert store.set("acme-1", [1]) is False
    assert store.get("acme-1") == [1]


def test_persisted_read_ignores_memory():
    """Test that a value only held in memory is not reported as stored."""
    conn = dropped_connection()
    store = make_store(conn)
    store.set("acme-1", [1])

    with pytest.raises(CacheReadError):
        store.get_persisted("acme-1")


def test_delete_and_clear_raise_on_failure():
    store = make_store(dropped_connection())

    with pytest.raises(CacheWriteError):
        store.delete("acme-1")
    with pytest.raises(CacheWriteError):
        store.clear()


def test_sweep_failure_removes_nothing():
    assert make_store(dropped_connection()).sweep_expired() == 0


def test_sweep_deletes_expired_rows():
    conn = FakeConnection(rowcount=3)

    assert make_store(conn).sweep_expired() == 3
    query, params = conn.queries[0]
    assert "expires_at IS NOT NULL AND expires_at <=" in query
    assert params == (NOW,)


def test_count():
    conn = FakeConnection(rows=[(5,)])

    assert make_store(conn).count(include_expired=False) == 5
    assert conn.queries[0][1] == (NOW,)


def test_count_failure_raises():
    with pytest.raises(CacheReadError):
        make_store(dropped_connection()).count()


@pytest.fixture
def connect(monkeypatch):
    """Make psycopg2.connect hand out a scripted connection."""
    conn = FakeConnection()
    monkeypatch.setattr(postgres_cache_store.psycopg2, "connect", lambda dsn: conn)
    return conn


def test_run_lock_taken(connect):
    """Test taking and releasing the advisory lock."""
    connect.rows = [(True,)]
    db = PostgresCacheDatabase("dbname=test")

    db.acquire_run_lock("host-a:1")
    db.close()
    db.close()

    statements = [query for query, _ in connect.queries]
    assert statements[0].startswith("SELECT pg_try_advisory_lock")
    assert statements[1].startswith("SELECT pg_advisory_unlock")
    assert connect.closed


def test_run_lock_held_elsewhere(connect):
    """Test that a held advisory lock refuses a second run."""
    connect.rows = [(False,)]
    db = PostgresCacheDatabase("dbname=test")

    with pytest.raises(RunLockError):
        db.acquire_run_lock("host-b:2")
    db.close()

    assert len(connect.queries) == 1


def test_close_after_connection_drop(connect):
    """Test that closing a database whose server went away does not raise."""
    connect.rows = [(True,)]
    db = PostgresCacheDatabase("dbname=test")
    db.acquire_run_lock("host-a:1")
    connect.closed = True

    db.close()


class DroppedDatabase(ICacheDatabase):
    """Database whose every namespace sits on a dropped connection."""

    def __init__(self):
        self._conn = dropped_connection()
        self._stores = {}

    def create_schema(self):
        pass

    def namespace(self, dataset):
        if dataset not in self._stores:
            self._stores[dataset] = PostgresCacheStore(self._conn, dataset.table_name, lambda: NOW)
        return self._stores[dataset]

    def sweep_expired(self):
        return {}

    def acquire_run_lock(self, owner):
        pass

    def release_run_lock(self):
        pass

    def close(self):
        pass


@pytest.mark.asyncio
async def test_orchestrator_survives_dropped_cache_connection(clock):
    """Test that a broken cache never aborts the batch."""
    key = "acme-2024-01-01T00:00:00Z-2024-01-06T00:00:00Z"
    client = FakeGitHubClient(pages={(key, None): [Page([{"id": "PR_1"}])]})
    sleep = SleepRecorder(clock)
    orchestrator = FetchOrchestrator(
        client,
        DroppedDatabase(),
        TTLPolicy(clock=clock),
        RateLimitGate(client, sleep=sleep, clock=clock),
        sleep=sleep
    )

    result = await orchestrator.fetch_pull_requests("acme", datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 1, 10, tzinfo=timezone.utc))

    assert result == [{"id": "PR_1"}]
    assert orchestrator.statistics.fresh_fetches == 2
    assert orchestrator.statistics.skipped == 0
