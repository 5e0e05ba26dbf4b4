"""Shared fakes and fixtures."""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
import pytest
from github_metrics.domain.github_interface import IGitHubClient
from github_metrics.domain.models import FetchUnit, Page, Quota
from github_metrics.infrastructure.sqlite_cache_store import SQLiteCacheDatabase


NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SleepRecorder:
    """Async sleep replacement that records delays and advances a clock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: List[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


class FakeGitHubClient(IGitHubClient):
    """Scripted upstream.

    ``pages`` maps ``(cache_key, cursor)`` to a list of outcomes (a Page or an
    exception to raise). Outcomes are consumed in order; the last one repeats.
    """

    def __init__(
        self,
        pages: Optional[Dict[Tuple[str, Optional[str]], list]] = None,
        quotas: Optional[List[Quota]] = None,
        quota_error: Optional[Exception] = None
    ):
        self.pages = pages or {}
        self.quotas = list(quotas or [])
        self.quota_error = quota_error
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.quota_calls: List[str] = []
        self.closed = False

    async def fetch_page(self, unit: FetchUnit, cursor: Optional[str] = None) -> Page:
        self.calls.append((unit.cache_key, cursor))
        outcomes = self.pages.get((unit.cache_key, cursor))
        if not outcomes:
            return Page(records=[])
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def get_quota(self, resource: str) -> Quota:
        self.quota_calls.append(resource)
        if self.quota_error is not None:
            raise self.quota_error
        if not self.quotas:
            return Quota(resource=resource, remaining=5000)
        return self.quotas.pop(0) if len(self.quotas) > 1 else self.quotas[0]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path, clock):
    db = SQLiteCacheDatabase(tmp_path / "cache.db", clock=clock)
    yield db
    db.close()
