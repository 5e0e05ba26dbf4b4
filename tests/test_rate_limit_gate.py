"""Tests for the rate-limit gate."""
from datetime import timedelta
import pytest
from conftest import FakeGitHubClient, SleepRecorder
from github_metrics.application.rate_limit_gate import RateLimitGate
from github_metrics.domain.errors import QuotaExceeded
from github_metrics.domain.models import Quota


def build_gate(client, clock, max_waits=3):
    sleep = SleepRecorder(clock)
    return RateLimitGate(client, buffer=5, max_waits=max_waits, sleep=sleep, clock=clock), sleep


@pytest.mark.asyncio
async def test_allows_when_quota_is_plentiful(clock):
    """Test that requests pass while the quota is above the buffer."""
    gate, sleep = build_gate(FakeGitHubClient(quotas=[Quota("search", 30)]), clock)

    status = await gate.check_quota("search")

    assert status.allowed
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_blocks_at_the_buffer(clock):
    """Test that the gate closes once only the reserve is left."""
    reset_at = clock() + timedelta(seconds=30)
    gate, _ = build_gate(FakeGitHubClient(quotas=[Quota("search", 5, reset_at)]), clock)

    status = await gate.check_quota("search")

    assert not status.allowed
    assert status.reset_at == reset_at


@pytest.mark.asyncio
async def test_fails_open_when_quota_unreadable(clock):
    """Test that a broken quota endpoint does not stop the run."""
    gate, _ = build_gate(FakeGitHubClient(quota_error=RuntimeError("boom")), clock)

    status = await gate.check_quota("graphql")

    assert status.allowed


@pytest.mark.asyncio
async def test_observed_quota_avoids_quota_request(clock):
    """Test that quota seen in a response is used instead of asking again."""
    client = FakeGitHubClient()
    gate, _ = build_gate(client, clock)
    gate.observe(Quota("graphql", 4000, clock() + timedelta(minutes=30)))

    status = await gate.check_quota("graphql")

    assert status.allowed
    assert client.quota_calls == []


@pytest.mark.asyncio
async def test_past_reset_reopens_the_gate(clock):
    """Test that an exhausted quota whose window rolled over is allowed."""
    client = FakeGitHubClient()
    gate, _ = build_gate(client, clock)
    gate.observe(Quota("search", 0, clock() - timedelta(seconds=1)))

    status = await gate.check_quota("search")

    assert status.allowed


@pytest.mark.asyncio
async def test_acquire_waits_for_reset(clock):
    """Test that acquire sleeps until the reset time and then proceeds."""
    client = FakeGitHubClient(quotas=[
        Quota("search", 0, clock() + timedelta(seconds=2)),
        Quota("search", 30),
    ])
    gate, sleep = build_gate(client, clock)

    await gate.acquire("search")

    assert len(sleep.delays) == 1
    assert sleep.delays[0] >= 2
    assert gate.waits == 1
    assert client.quota_calls == ["search", "search"]


@pytest.mark.asyncio
async def test_acquire_with_unknown_reset_raises(clock):
    """Test that an exhausted quota without a reset time is not waited on."""
    gate, sleep = build_gate(FakeGitHubClient(quotas=[Quota("search", 0)]), clock)

    with pytest.raises(QuotaExceeded):
        await gate.acquire("search")
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_acquire_gives_up_after_max_waits(clock):
    """Test that a quota that never recovers eventually raises."""
    client = FakeGitHubClient()
    gate, sleep = build_gate(client, clock, max_waits=2)

    async def always_exhausted(resource):
        return Quota(resource, 0, clock() + timedelta(seconds=10))

    client.get_quota = always_exhausted

    with pytest.raises(QuotaExceeded):
        await gate.acquire("core")
    assert len(sleep.delays) == 2
