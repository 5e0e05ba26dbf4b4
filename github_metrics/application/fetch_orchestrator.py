"""Fetch orchestrator deciding, per unit of work, between cache and network."""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential
)
from github_metrics.application.rate_limit_gate import RateLimitGate
from github_metrics.domain.cache_interface import ICacheDatabase, ICacheStore
from github_metrics.domain.errors import (
    PermanentQueryError,
    QuotaExceeded,
    TransientNetworkError
)
from github_metrics.domain.github_interface import IGitHubClient
from github_metrics.domain.intervals import DAYS_IN_INTERVAL, get_date_intervals
from github_metrics.domain.models import (
    Dataset,
    FetchUnit,
    Page,
    RunModes,
    RunStatistics,
    UnitResult,
    UnitState
)
from github_metrics.domain.ttl_policy import TTLPolicy


logger = logging.getLogger(__name__)

# Unique identifier of a record in each dataset, used for deduplication.
RECORD_IDENTIFIERS = {
    Dataset.COMMITS: "oid",
    Dataset.PULL_REQUESTS: "id",
    Dataset.ISSUES: "id",
    Dataset.ISSUE_EVENTS: "id",
    Dataset.REPOSITORIES: "name",
}


def deduplicate(records: List[Dict[str, Any]], identifier: Optional[str]) -> List[Dict[str, Any]]:
    """Collapse records sharing an identifier, keeping the last one seen.

    Records without the identifier are kept as they are.
    """
    if identifier is None:
        return list(records)
    by_id: Dict[Any, Dict[str, Any]] = {}
    anonymous: List[Dict[str, Any]] = []
    for record in records:
        record_id = record.get(identifier) if isinstance(record, dict) else None
        if record_id is None:
            anonymous.append(record)
        else:
            by_id[record_id] = record
    return list(by_id.values()) + anonymous


class FetchOrchestrator:
    """Resolves fetch units from the cache or the upstream API.

    Each unit is resolved independently: failures are logged, counted in the
    run statistics and turned into a skipped (or stale) unit so the batch it
    belongs to always completes. Units are processed one at a time; the
    upstream search quota makes parallel requests counterproductive.
    """

    def __init__(
        self,
        github_client: IGitHubClient,
        database: ICacheDatabase,
        ttl_policy: TTLPolicy,
        gate: RateLimitGate,
        modes: RunModes = RunModes(),
        days_in_interval: int = DAYS_IN_INTERVAL,
        max_retries: int = 5,
        retry_base_delay: float = 3.0,
        max_retry_delay: float = 60.0,
        max_rate_limit_waits: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """Initialize the orchestrator.

        Args:
            github_client: Upstream page fetcher
            database: Durable cache; one namespace per dataset
            ttl_policy: Computes the TTL of freshly fetched values
            gate: Rate-limit gate consulted before each request
            modes: Offline / force-refresh / skip-subset flags for this run
            days_in_interval: Length of the intervals a range is sliced into
            max_retries: Attempts per page on transient failures
            retry_base_delay: First backoff delay in seconds; doubles per attempt
            max_retry_delay: Upper bound of a single backoff delay
            max_rate_limit_waits: Rate-limit waits allowed for a single page
            sleep: Coroutine used for backoff delays
        """
        self._client = github_client
        self._database = database
        self._ttl_policy = ttl_policy
        self._gate = gate
        self._modes = modes
        self._days_in_interval = days_in_interval
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._max_retry_delay = max_retry_delay
        self._max_rate_limit_waits = max_rate_limit_waits
        self._sleep = sleep
        self._statistics = RunStatistics()
        self._waits_baseline = gate.waits
        self._skipped_datasets: Set[Dataset] = set()

    @property
    def modes(self) -> RunModes:
        return self._modes

    @property
    def statistics(self) -> RunStatistics:
        self._statistics.rate_limit_waits = self._gate.waits - self._waits_baseline
        return self._statistics

    def reset_statistics(self) -> None:
        """Start a fresh set of counters for a new run."""
        self._statistics.reset()
        self._waits_baseline = self._gate.waits
        self._skipped_datasets = set()

    async def resolve(self, unit: FetchUnit) -> UnitResult:
        """Resolve one unit to a value, never raising for unit-level failures."""
        result = await self._resolve(unit)
        self._statistics.record(result)
        if result.state.is_skipped:
            logger.warning(f"Skipped {unit.describe()}: {result.state.value}")
        else:
            logger.debug(f"Resolved {unit.describe()}: {result.state.value}")
        return result

    async def _resolve(self, unit: FetchUnit) -> UnitResult:
        store = self._database.namespace(unit.dataset)
        key = unit.cache_key

        if not self._modes.force_refresh:
            cached = self._read_cache(store, key)
            if cached is not None:
                return UnitResult(unit, UnitState.RESOLVED_FROM_CACHE, cached)

        if self._modes.offline:
            return self._fallback(unit, store, UnitState.SKIPPED_NO_DATA)

        try:
            value = await self._fetch_unit(unit)
        except QuotaExceeded as e:
            logger.warning(f"Rate limited while fetching {unit.describe()}: {e}")
            return UnitResult(unit, UnitState.SKIPPED_RATE_LIMITED)
        except (TransientNetworkError, PermanentQueryError) as e:
            logger.error(f"Error fetching {unit.describe()}: {e}")
            return self._fallback(unit, store, UnitState.SKIPPED_EXHAUSTED)
        except Exception as e:
            logger.error(f"Unexpected error fetching {unit.describe()}: {e}", exc_info=True)
            return self._fallback(unit, store, UnitState.SKIPPED_EXHAUSTED)

        ttl = self._ttl_policy.compute_ttl(unit.dataset, unit.interval)
        try:
            store.set(key, value, ttl)
        except Exception as e:
            logger.error(f"Could not cache {unit.describe()}, using the fetched value anyway: {e}")
        return UnitResult(unit, UnitState.RESOLVED_FRESH, value)

    @staticmethod
    def _read_cache(store: ICacheStore, key: str) -> Optional[Any]:
        try:
            return store.get(key)
        except Exception as e:
            logger.error(f"Cache lookup failed for {key}, treating as miss: {e}")
            return None

    @staticmethod
    def _fallback(unit: FetchUnit, store: ICacheStore, skipped_state: UnitState) -> UnitResult:
        """Serve the last known value for the unit, expired or not."""
        try:
            entry = store.get_entry(unit.cache_key, include_expired=True)
        except Exception as e:
            logger.error(f"Stale lookup failed for {unit.describe()}: {e}")
            entry = None
        if entry is None:
            return UnitResult(unit, skipped_state)
        logger.info(f"Serving stale cached value for {unit.describe()} (cached {entry.created_at})")
        return UnitResult(unit, UnitState.RESOLVED_STALE_FALLBACK, entry.value)

    async def _fetch_unit(self, unit: FetchUnit) -> Any:
        """Fetch every page of a unit and assemble the value to cache."""
        records: List[Dict[str, Any]] = []
        related: List[Dict[str, Any]] = []
        seen_cursors: Set[str] = set()
        cursor: Optional[str] = None

        while True:
            page = await self._fetch_page(unit, cursor)
            records.extend(page.records)
            related.extend(page.related)

            if not page.has_next_page or not page.records:
                break
            if page.end_cursor is None or page.end_cursor in seen_cursors:
                logger.warning(f"Pagination cursor did not advance for {unit.describe()}, stopping")
                break
            seen_cursors.add(page.end_cursor)
            cursor = page.end_cursor

        records = deduplicate(records, RECORD_IDENTIFIERS.get(unit.dataset))
        if unit.dataset is Dataset.PR_REVIEWS:
            return {"reviews": records, "reviewThreads": related}
        return records

    async def _fetch_page(self, unit: FetchUnit, cursor: Optional[str]) -> Page:
        """Fetch one page through the rate-limit gate.

        A rate-limit rejection with a known reset re-issues the same request
        after the reset, so no page is skipped.
        """
        resource = unit.dataset.resource
        waits = 0
        while True:
            await self._gate.acquire(resource)
            try:
                page = await self._request_with_backoff(unit, cursor)
            except QuotaExceeded as e:
                if e.reset_at is None or waits >= self._max_rate_limit_waits:
                    raise
                waits += 1
                await self._gate.wait_for_reset(e.reset_at, resource)
                continue
            self._gate.observe(page.quota)
            return page

    async def _request_with_backoff(self, unit: FetchUnit, cursor: Optional[str]) -> Page:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientNetworkError),
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(
                multiplier=self._retry_base_delay,
                min=self._retry_base_delay,
                max=self._max_retry_delay
            ),
            sleep=self._sleep,
            before_sleep=self._before_retry,
            reraise=True
        )
        async for attempt in retrying:
            with attempt:
                page = await self._client.fetch_page(unit, cursor)
        return page

    def _before_retry(self, retry_state) -> None:
        self._statistics.retries += 1
        logger.warning(
            f"Retrying request (attempt {retry_state.attempt_number}/{self._max_retries}) "
            f"in {retry_state.next_action.sleep:.1f}s after: {retry_state.outcome.exception()}"
        )

    def _dataset_skipped(self, dataset: Dataset) -> bool:
        if not self._modes.is_skipped(dataset):
            return False
        if dataset not in self._skipped_datasets:
            self._skipped_datasets.add(dataset)
            self._statistics.datasets_skipped += 1
            logger.info(f"Dataset {dataset.slug} is excluded from this run")
        return True

    async def _resolve_intervals(
        self,
        dataset: Dataset,
        owner: str,
        start_date: datetime,
        end_date: datetime,
        repository: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        for interval in get_date_intervals(start_date, end_date, self._days_in_interval):
            unit = FetchUnit(dataset=dataset, owner=owner, repository=repository, interval=interval)
            result = await self.resolve(unit)
            if isinstance(result.value, list):
                records.extend(result.value)
        return records

    async def list_repositories(self, owner: str) -> List[str]:
        """Names of every repository of the organization."""
        if self._dataset_skipped(Dataset.REPOSITORIES):
            return []
        result = await self.resolve(FetchUnit(dataset=Dataset.REPOSITORIES, owner=owner))
        return [node["name"] for node in result.value or [] if node.get("name")]

    async def fetch_commits(
        self,
        owner: str,
        repositories: List[str],
        start_date: datetime,
        end_date: datetime
    ) -> List[Dict[str, Any]]:
        """Default-branch commits of every repository within the range."""
        if self._dataset_skipped(Dataset.COMMITS):
            return []
        commits: List[Dict[str, Any]] = []
        for repository in repositories:
            commits.extend(await self._resolve_intervals(
                Dataset.COMMITS, owner, start_date, end_date, repository=repository
            ))
        logger.info(f"Collected {len(commits)} commits across {len(repositories)} repositories")
        return deduplicate(commits, RECORD_IDENTIFIERS[Dataset.COMMITS])

    async def fetch_pull_requests(
        self,
        owner: str,
        start_date: datetime,
        end_date: datetime
    ) -> List[Dict[str, Any]]:
        """Merged pull requests of the organization created within the range."""
        if self._dataset_skipped(Dataset.PULL_REQUESTS):
            return []
        pull_requests = await self._resolve_intervals(
            Dataset.PULL_REQUESTS, owner, start_date, end_date
        )
        logger.info(f"Collected {len(pull_requests)} merged pull requests")
        return deduplicate(pull_requests, RECORD_IDENTIFIERS[Dataset.PULL_REQUESTS])

    async def fetch_reviews(self, owner: str, repository: str, number: int) -> Dict[str, List[Dict[str, Any]]]:
        """Reviews and review threads of one pull request."""
        empty: Dict[str, List[Dict[str, Any]]] = {"reviews": [], "reviewThreads": []}
        if self._dataset_skipped(Dataset.PR_REVIEWS):
            return empty
        unit = FetchUnit(dataset=Dataset.PR_REVIEWS, owner=owner, repository=repository, number=number)
        result = await self.resolve(unit)
        if not isinstance(result.value, dict):
            return empty
        return {
            "reviews": result.value.get("reviews") or [],
            "reviewThreads": result.value.get("reviewThreads") or [],
        }

    async def fetch_closed_issues(
        self,
        owner: str,
        start_date: datetime,
        end_date: datetime
    ) -> List[Dict[str, Any]]:
        """Issues of the organization closed within the range."""
        if self._dataset_skipped(Dataset.ISSUES):
            return []
        issues = await self._resolve_intervals(Dataset.ISSUES, owner, start_date, end_date)
        logger.info(f"Collected {len(issues)} closed issues")
        return deduplicate(issues, RECORD_IDENTIFIERS[Dataset.ISSUES])

    async def fetch_issue_events(self, owner: str, repository: str, number: int) -> List[Dict[str, Any]]:
        """Timeline events of one issue."""
        if self._dataset_skipped(Dataset.ISSUE_EVENTS):
            return []
        unit = FetchUnit(dataset=Dataset.ISSUE_EVENTS, owner=owner, repository=repository, number=number)
        result = await self.resolve(unit)
        if not isinstance(result.value, list):
            return []
        return deduplicate(result.value, RECORD_IDENTIFIERS[Dataset.ISSUE_EVENTS])
