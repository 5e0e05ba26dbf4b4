"""Tests for domain models."""
from datetime import datetime, timedelta, timezone
import pytest
from github_metrics.domain.models import (
    CacheEntry,
    Dataset,
    DateInterval,
    FetchUnit,
    RunModes,
    RunStatistics,
    UnitResult,
    UnitState,
    format_timestamp,
    parse_timestamp
)


INTERVAL = DateInterval(since="2023-01-01T00:00:00Z", until="2023-01-06T00:00:00Z")


def test_org_wide_interval_key():
    """Test the key of an organization-wide search interval."""
    unit = FetchUnit(dataset=Dataset.PULL_REQUESTS, owner="acme", interval=INTERVAL)

    assert unit.cache_key == "acme-2023-01-01T00:00:00Z-2023-01-06T00:00:00Z"


def test_repository_interval_key():
    """Test the key of a per-repository commits interval."""
    unit = FetchUnit(dataset=Dataset.COMMITS, owner="acme", repository="api", interval=INTERVAL)

    assert unit.cache_key == "acme-api-2023-01-01T00:00:00Z-2023-01-06T00:00:00Z"


def test_entity_key():
    """Test the key of a per-pull-request unit."""
    unit = FetchUnit(dataset=Dataset.PR_REVIEWS, owner="acme", repository="api", number=42)

    assert unit.cache_key == "acme-api-42"
    assert unit.describe() == "pr_reviews:acme-api-42"


def test_identical_parameters_give_identical_keys():
    """Test that keys are a pure function of the unit parameters."""
    first = FetchUnit(Dataset.COMMITS, "acme", "api", None, DateInterval(INTERVAL.since, INTERVAL.until))
    second = FetchUnit(Dataset.COMMITS, "acme", "api", None, DateInterval(INTERVAL.since, INTERVAL.until))

    assert first == second
    assert first.cache_key == second.cache_key


def test_timestamp_round_trip():
    """Test ISO formatting and parsing of UTC timestamps."""
    value = datetime(2024, 1, 5, 10, 30, tzinfo=timezone.utc)

    assert format_timestamp(value) == "2024-01-05T10:30:00Z"
    assert parse_timestamp("2024-01-05T10:30:00Z") == value
    assert format_timestamp(datetime(2024, 1, 5, 10, 30)) == "2024-01-05T10:30:00Z"


def test_timestamp_converts_other_offsets():
    """Test that non-UTC datetimes are converted before formatting."""
    value = datetime(2024, 1, 5, 12, 0, tzinfo=timezone(timedelta(hours=2)))

    assert format_timestamp(value) == "2024-01-05T10:00:00Z"


def test_cache_entry_expiry():
    """Test perpetual and expiring entries."""
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    perpetual = CacheEntry(key="k", value=[], created_at=now)
    expiring = CacheEntry(key="k", value=[], created_at=now, expires_at=now + timedelta(hours=1))

    assert perpetual.is_perpetual
    assert not perpetual.is_expired(now + timedelta(days=3650))
    assert not expiring.is_expired(now + timedelta(minutes=59))
    assert expiring.is_expired(now + timedelta(hours=1))


def test_dataset_from_slug():
    """Test parsing dataset names from configuration."""
    assert Dataset.from_slug("issues") is Dataset.ISSUES
    assert Dataset.from_slug(" Issue-Events ") is Dataset.ISSUE_EVENTS
    assert Dataset.from_slug("prs_cache") is Dataset.PULL_REQUESTS

    with pytest.raises(ValueError):
        Dataset.from_slug("wikis")


def test_search_datasets_share_the_search_quota():
    """Test the rate-limit resource of each dataset."""
    assert Dataset.PULL_REQUESTS.resource == "search"
    assert Dataset.ISSUES.resource == "search"
    assert Dataset.COMMITS.resource == "graphql"
    assert Dataset.ISSUE_EVENTS.resource == "core"


def test_run_modes_skip():
    """Test skip-subset membership."""
    modes = RunModes(skip_datasets=frozenset({Dataset.ISSUES}))

    assert modes.is_skipped(Dataset.ISSUES)
    assert not modes.is_skipped(Dataset.COMMITS)


def test_run_statistics_counts_and_resets():
    """Test counting unit outcomes."""
    stats = RunStatistics()
    unit = FetchUnit(dataset=Dataset.ISSUES, owner="acme", interval=INTERVAL)

    stats.record(UnitResult(unit, UnitState.RESOLVED_FROM_CACHE, []))
    stats.record(UnitResult(unit, UnitState.RESOLVED_STALE_FALLBACK, []))
    stats.record(UnitResult(unit, UnitState.SKIPPED_EXHAUSTED))

    assert stats.cache_hits == 1
    assert stats.stale_fallbacks == 1
    assert stats.skipped == 1
    assert stats.degraded == 2
    assert stats.skipped_units == [f"{unit.describe()} (skipped_exhausted)"]

    stats.reset()

    assert stats.skipped == 0
    assert stats.skipped_units == []
