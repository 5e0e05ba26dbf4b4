"""Slicing of reporting ranges into fixed-size date intervals.

The search API returns at most 1000 results per query, so a long range is
broken into short intervals that are fetched (and cached) one at a time.
"""
from datetime import datetime, timedelta, timezone
from typing import List
from github_metrics.domain.models import DateInterval, format_timestamp


DAYS_IN_INTERVAL = 5


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_date_intervals(
    start_date: datetime,
    end_date: datetime,
    interval_in_days: int = DAYS_IN_INTERVAL
) -> List[DateInterval]:
    """Break ``[start_date, end_date)`` into contiguous intervals.

    Boundaries are widened to whole seconds (start rounded down, end rounded
    up) so repeated runs produce the same cache keys and the intervals still
    cover the whole range.

    Args:
        start_date: Beginning of the range (inclusive)
        end_date: End of the range; the last interval ends here, rounded up
            to the next whole second
        interval_in_days: Maximum length of each interval

    Returns:
        Intervals in chronological order; empty if the range is empty

    Raises:
        ValueError: If interval_in_days is not positive
    """
    if interval_in_days <= 0:
        raise ValueError("interval_in_days must be positive")

    start = _as_utc(start_date).replace(microsecond=0)
    end = _as_utc(end_date)
    if end.microsecond:
        end = end.replace(microsecond=0) + timedelta(seconds=1)
    step = timedelta(days=interval_in_days)

    intervals: List[DateInterval] = []
    current = start
    while current < end:
        current_end = min(current + step, end)
        intervals.append(DateInterval(
            since=format_timestamp(current),
            until=format_timestamp(current_end)
        ))
        current = current_end
    return intervals
