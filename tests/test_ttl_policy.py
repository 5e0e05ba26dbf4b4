"""Tests for the cache TTL policy."""
from datetime import datetime, timezone
import pytest
from github_metrics.domain.models import Dataset, DateInterval, TTLClass
from github_metrics.domain.ttl_policy import PERPETUAL, TTLPolicy


NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy():
    return TTLPolicy(recent_hours=6, today_hours=3, repositories_hours=24, clock=lambda: NOW)


def ending(until: str) -> DateInterval:
    return DateInterval(since="2024-01-01T00:00:00Z", until=until)


@pytest.mark.parametrize("dataset", [Dataset.PR_REVIEWS, Dataset.ISSUE_EVENTS])
def test_immutable_datasets_never_expire(policy, dataset):
    """Test that reviews and issue events are cached forever."""
    assert policy.compute_ttl(dataset) == PERPETUAL
    assert policy.classify(dataset) is TTLClass.IMMUTABLE


@pytest.mark.parametrize("dataset", [Dataset.COMMITS, Dataset.PULL_REQUESTS, Dataset.ISSUES])
def test_historical_interval_never_expires(policy, dataset):
    """Test that intervals ending more than a week ago are perpetual."""
    interval = ending("2024-03-12T12:00:00Z")

    assert policy.days_ago(interval) == 8
    assert policy.compute_ttl(dataset, interval) == PERPETUAL


def test_recent_interval(policy):
    """Test intervals that ended within the last week."""
    assert policy.compute_ttl(Dataset.PULL_REQUESTS, ending("2024-03-13T12:00:00Z")) == 6 * 3600
    assert policy.compute_ttl(Dataset.ISSUES, ending("2024-03-19T12:00:00Z")) == 6 * 3600


def test_interval_ending_today(policy):
    """Test intervals ending today or in the future."""
    assert policy.compute_ttl(Dataset.COMMITS, ending("2024-03-20T06:00:00Z")) == 3 * 3600
    assert policy.compute_ttl(Dataset.COMMITS, ending("2024-03-21T00:00:00Z")) == 3 * 3600
    assert policy.classify(Dataset.COMMITS, ending("2024-03-25T00:00:00Z")) is TTLClass.TODAY


def test_repositories_use_fixed_ttl(policy):
    """Test the organization repository listing TTL."""
    assert policy.compute_ttl(Dataset.REPOSITORIES) == 24 * 3600


def test_ttl_is_deterministic(policy):
    """Test that the same inputs at the same time give the same TTL."""
    interval = ending("2024-03-15T00:00:00Z")

    results = {policy.compute_ttl(Dataset.PULL_REQUESTS, interval) for _ in range(5)}

    assert results == {6 * 3600}


def test_ttl_follows_the_clock():
    """Test that an interval becomes historical as time passes."""
    interval = ending("2024-03-19T00:00:00Z")
    today = TTLPolicy(clock=lambda: datetime(2024, 3, 19, 8, tzinfo=timezone.utc))
    later = TTLPolicy(clock=lambda: datetime(2024, 3, 28, 8, tzinfo=timezone.utc))

    assert today.classify(Dataset.ISSUES, interval) is TTLClass.TODAY
    assert later.classify(Dataset.ISSUES, interval) is TTLClass.HISTORICAL
