"""Tests for date interval slicing."""
from datetime import datetime, timedelta, timezone
import pytest
from github_metrics.domain.intervals import get_date_intervals
from github_metrics.domain.models import DateInterval


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_ten_days_in_five_day_intervals():
    """Test the common case of an exact multiple."""
    intervals = get_date_intervals(utc(2024, 1, 1), utc(2024, 1, 11), 5)

    assert intervals == [
        DateInterval("2024-01-01T00:00:00Z", "2024-01-06T00:00:00Z"),
        DateInterval("2024-01-06T00:00:00Z", "2024-01-11T00:00:00Z"),
    ]


def test_last_interval_is_truncated_to_end():
    """Test that the final interval ends exactly at the end of the range."""
    intervals = get_date_intervals(utc(2024, 1, 1), utc(2024, 1, 10), 5)

    assert len(intervals) == 2
    assert intervals[-1] == DateInterval("2024-01-06T00:00:00Z", "2024-01-10T00:00:00Z")


@pytest.mark.parametrize("start,end,days", [
    (utc(2024, 1, 1), utc(2024, 3, 1), 5),
    (utc(2024, 2, 27, 13, 30), utc(2024, 3, 4, 8), 1),
    (utc(2023, 12, 30), utc(2024, 1, 2), 7),
    (utc(2024, 1, 1), utc(2024, 1, 1, 0, 0, 1), 5),
])
def test_intervals_tile_the_range(start, end, days):
    """Test contiguity, coverage and maximum length."""
    intervals = get_date_intervals(start, end, days)

    assert intervals[0].since_at == start
    assert intervals[-1].until_at == end
    for previous, following in zip(intervals, intervals[1:]):
        assert previous.until == following.since
    for interval in intervals:
        assert interval.since_at < interval.until_at
        assert interval.until_at - interval.since_at <= timedelta(days=days)


def test_empty_range():
    """Test that an empty or inverted range yields no intervals."""
    assert get_date_intervals(utc(2024, 1, 1), utc(2024, 1, 1)) == []
    assert get_date_intervals(utc(2024, 1, 5), utc(2024, 1, 1)) == []


def test_invalid_interval_length():
    """Test that a non-positive interval length is rejected."""
    with pytest.raises(ValueError):
        get_date_intervals(utc(2024, 1, 1), utc(2024, 1, 10), 0)


def test_boundaries_are_second_precision():
    """Test that sub-second noise does not leak into cache keys."""
    start = utc(2024, 1, 1, 0, 0, 0) + timedelta(microseconds=999)
    intervals = get_date_intervals(start, utc(2024, 1, 3), 5)

    assert intervals == [DateInterval("2024-01-01T00:00:00Z", "2024-01-03T00:00:00Z")]


def test_naive_datetimes_are_treated_as_utc():
    """Test that naive inputs produce the same intervals as UTC inputs."""
    naive = get_date_intervals(datetime(2024, 1, 1), datetime(2024, 1, 8), 5)
    aware = get_date_intervals(utc(2024, 1, 1), utc(2024, 1, 8), 5)

    assert naive == aware


def test_sub_second_range_is_covered():
    """Test that a range shorter than a second still yields one interval."""
    start = utc(2024, 1, 1) + timedelta(microseconds=200000)
    end = utc(2024, 1, 1) + timedelta(microseconds=800000)

    intervals = get_date_intervals(start, end, 5)

    assert intervals == [DateInterval("2024-01-01T00:00:00Z", "2024-01-01T00:00:01Z")]


def test_fractional_end_is_rounded_up():
    """Test that the last interval reaches past a fractional end."""
    end = utc(2024, 1, 3) + timedelta(microseconds=500000)

    intervals = get_date_intervals(utc(2024, 1, 1), end, 5)

    assert intervals == [DateInterval("2024-01-01T00:00:00Z", "2024-01-03T00:00:01Z")]
