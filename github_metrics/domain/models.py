"""Domain models representing the cache, fetch and metrics entities."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_timestamp(value: datetime) -> str:
    """Format a datetime as a second-precision UTC ISO-8601 string.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(ISO_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Dataset(Enum):
    """A cached dataset. The value is the name of its table."""
    COMMITS = "commits_cache"
    PULL_REQUESTS = "prs_cache"
    PR_REVIEWS = "prs_review_cache"
    ISSUES = "issues_cache"
    ISSUE_EVENTS = "issue_events_cache"
    REPOSITORIES = "repositories_cache"

    @property
    def table_name(self) -> str:
        return self.value

    @property
    def slug(self) -> str:
        """Lowercase name used in configuration (e.g. ``pull_requests``)."""
        return self.name.lower()

    @property
    def resource(self) -> str:
        """Upstream rate-limit bucket the dataset is fetched from."""
        return _DATASET_RESOURCES[self]

    @classmethod
    def from_slug(cls, slug: str) -> "Dataset":
        normalized = slug.strip().lower().replace("-", "_")
        for dataset in cls:
            if dataset.slug == normalized or dataset.value == normalized:
                return dataset
        raise ValueError(f"Unknown dataset: {slug!r}")


_DATASET_RESOURCES = {
    Dataset.COMMITS: "graphql",
    Dataset.PULL_REQUESTS: "search",
    Dataset.PR_REVIEWS: "graphql",
    Dataset.ISSUES: "search",
    Dataset.ISSUE_EVENTS: "core",
    Dataset.REPOSITORIES: "graphql",
}


class TTLClass(Enum):
    """Staleness category of a cached value."""
    HISTORICAL = "historical"
    RECENT = "recent"
    TODAY = "today"
    IMMUTABLE = "immutable"


@dataclass(frozen=True)
class DateInterval:
    """One slice of a reporting range, as ISO-8601 UTC strings."""
    since: str
    until: str

    @property
    def since_at(self) -> datetime:
        return parse_timestamp(self.since)

    @property
    def until_at(self) -> datetime:
        return parse_timestamp(self.until)


@dataclass(frozen=True)
class CacheEntry:
    """A stored value with its bookkeeping timestamps.

    ``expires_at`` of None means the entry never expires.
    """
    key: str
    value: Any
    created_at: datetime
    expires_at: Optional[datetime] = None

    @property
    def is_perpetual(self) -> bool:
        return self.expires_at is None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class FetchUnit:
    """The atomic piece of fetch work: one dataset and one interval or entity.

    The cache key joins the identifying parameters that are present, so the
    same parameters always produce the same key.
    """
    dataset: Dataset
    owner: str
    repository: Optional[str] = None
    number: Optional[int] = None
    interval: Optional[DateInterval] = None

    @property
    def cache_key(self) -> str:
        parts = [self.owner]
        if self.repository is not None:
            parts.append(self.repository)
        if self.number is not None:
            parts.append(str(self.number))
        if self.interval is not None:
            parts.extend([self.interval.since, self.interval.until])
        return "-".join(parts)

    def describe(self) -> str:
        return f"{self.dataset.slug}:{self.cache_key}"


class UnitState(Enum):
    """Terminal states of a FetchUnit."""
    RESOLVED_FROM_CACHE = "resolved_from_cache"
    RESOLVED_FRESH = "resolved_fresh"
    RESOLVED_STALE_FALLBACK = "resolved_stale_fallback"
    SKIPPED_NO_DATA = "skipped_no_data"
    SKIPPED_RATE_LIMITED = "skipped_rate_limited"
    SKIPPED_EXHAUSTED = "skipped_exhausted"

    @property
    def is_skipped(self) -> bool:
        return self.name.startswith("SKIPPED")


@dataclass(frozen=True)
class UnitResult:
    """Outcome of resolving one FetchUnit."""
    unit: FetchUnit
    state: UnitState
    value: Any = None


@dataclass(frozen=True)
class Quota:
    """Remaining upstream quota for one rate-limit resource."""
    resource: str
    remaining: int
    reset_at: Optional[datetime] = None


@dataclass(frozen=True)
class QuotaStatus:
    """Answer of the rate-limit gate for the next request."""
    allowed: bool
    reset_at: Optional[datetime] = None


@dataclass(frozen=True)
class Page:
    """One page of records returned by the upstream API.

    ``related`` carries secondary records returned alongside the page
    (review threads for a pull request).
    """
    records: List[Dict[str, Any]]
    has_next_page: bool = False
    end_cursor: Optional[str] = None
    related: List[Dict[str, Any]] = field(default_factory=list)
    quota: Optional[Quota] = None


@dataclass(frozen=True)
class RunModes:
    """Process-wide flags that change how every FetchUnit is resolved."""
    offline: bool = False
    force_refresh: bool = False
    skip_datasets: FrozenSet[Dataset] = frozenset()

    def is_skipped(self, dataset: Dataset) -> bool:
        return dataset in self.skip_datasets


@dataclass
class RunStatistics:
    """Counters for a single report run. Never persisted."""
    cache_hits: int = 0
    fresh_fetches: int = 0
    stale_fallbacks: int = 0
    skipped: int = 0
    retries: int = 0
    rate_limit_waits: int = 0
    datasets_skipped: int = 0
    skipped_units: List[str] = field(default_factory=list)

    def record(self, result: UnitResult) -> None:
        """Count the terminal state of a unit."""
        if result.state is UnitState.RESOLVED_FROM_CACHE:
            self.cache_hits += 1
        elif result.state is UnitState.RESOLVED_FRESH:
            self.fresh_fetches += 1
        elif result.state is UnitState.RESOLVED_STALE_FALLBACK:
            self.stale_fallbacks += 1
        else:
            self.skipped += 1
            self.skipped_units.append(f"{result.unit.describe()} ({result.state.value})")

    def reset(self) -> None:
        self.cache_hits = 0
        self.fresh_fetches = 0
        self.stale_fallbacks = 0
        self.skipped = 0
        self.retries = 0
        self.rate_limit_waits = 0
        self.datasets_skipped = 0
        self.skipped_units = []

    @property
    def degraded(self) -> int:
        return self.skipped + self.stale_fallbacks


@dataclass
class ContributorMetrics:
    """Aggregated activity of one contributor over a reporting period."""
    commits: int = 0
    pull_requests: int = 0
    reviews: int = 0
    rejections: int = 0
    score: float = 0.0
    closed_issues: int = 0
    bug_labels: int = 0
    enhancement_labels: int = 0
    other_labels: int = 0


@dataclass(frozen=True)
class RankedUser:
    """A contributor and the sum of their positions across the rankings."""
    user: str
    total_index: int


@dataclass(frozen=True)
class MigrationResult:
    """Result of migrating one legacy cache file."""
    dataset: Dataset
    source_file: str
    keys_transferred: int
    errors: int
    success: bool
    verified: bool = False
    verification_rate: float = 0.0
