"""Time-to-live policy for cached datasets.

Upstream data about the past rarely changes, so anything older than a week
is cached forever. Only the moving window near "now" gets a bounded TTL.
"""
import math
from datetime import datetime
from typing import Callable, Optional
from github_metrics.domain.models import Dataset, DateInterval, TTLClass, utc_now


PERPETUAL = 0
HISTORICAL_AFTER_DAYS = 7
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400

IMMUTABLE_DATASETS = frozenset({Dataset.PR_REVIEWS, Dataset.ISSUE_EVENTS})


class TTLPolicy:
    """Decides how long a freshly fetched value may be served from cache.

    Args:
        recent_hours: TTL for intervals that ended 1 to 7 days ago
        today_hours: TTL for intervals ending today (or in the future)
        repositories_hours: TTL for the organization repository listing
        clock: Returns the current aware UTC datetime
    """

    def __init__(
        self,
        recent_hours: float = 6,
        today_hours: float = 3,
        repositories_hours: float = 24,
        clock: Callable[[], datetime] = utc_now
    ):
        self._ttl_by_class = {
            TTLClass.HISTORICAL: PERPETUAL,
            TTLClass.IMMUTABLE: PERPETUAL,
            TTLClass.RECENT: int(recent_hours * SECONDS_PER_HOUR),
            TTLClass.TODAY: int(today_hours * SECONDS_PER_HOUR),
        }
        self._repositories_ttl = int(repositories_hours * SECONDS_PER_HOUR)
        self._clock = clock

    def days_ago(self, interval: DateInterval) -> int:
        """Whole days between now and the interval's ``until`` boundary."""
        elapsed = (self._clock() - interval.until_at).total_seconds()
        return math.floor(elapsed / SECONDS_PER_DAY)

    def classify(self, dataset: Dataset, interval: Optional[DateInterval] = None) -> TTLClass:
        """Return the staleness class of a dataset/interval pair."""
        if dataset in IMMUTABLE_DATASETS:
            return TTLClass.IMMUTABLE
        if interval is None:
            return TTLClass.TODAY
        days = self.days_ago(interval)
        if days > HISTORICAL_AFTER_DAYS:
            return TTLClass.HISTORICAL
        if days > 0:
            return TTLClass.RECENT
        return TTLClass.TODAY

    def compute_ttl(self, dataset: Dataset, interval: Optional[DateInterval] = None) -> int:
        """Return the TTL in seconds; 0 means the entry never expires."""
        if dataset is Dataset.REPOSITORIES:
            return self._repositories_ttl
        return self._ttl_by_class[self.classify(dataset, interval)]
