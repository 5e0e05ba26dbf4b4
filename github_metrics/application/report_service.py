"""Report generation: fetch once for the longest period, aggregate every period."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from github_metrics.application.fetch_orchestrator import FetchOrchestrator
from github_metrics.application.metrics_service import MetricsAggregator, rank_users
from github_metrics.domain.models import (
    ContributorMetrics,
    RankedUser,
    RunStatistics,
    parse_timestamp,
    utc_now
)
from github_metrics.infrastructure.csv_report_writer import CsvReportWriter


logger = logging.getLogger(__name__)

# The periods to generate reports for, in weeks.
PERIODS: Dict[int, str] = {
    2: "Last 2 Weeks",
    4: "Last 4 Weeks",
    6: "Last 6 Weeks",
    12: "Last 12 Weeks",
}

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def aligned_range(now: datetime, weeks: int, interval_in_days: int) -> Tuple[datetime, datetime]:
    """Fetch range covering the last ``weeks`` weeks.

    The start is snapped to a fixed grid of ``interval_in_days`` days since
    the epoch and the end to the next UTC midnight, so the same intervals
    (and cache keys) come back on every run.
    """
    end = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    end += timedelta(days=1)
    raw_start = now - timedelta(weeks=weeks)
    step = timedelta(days=interval_in_days)
    start = EPOCH + step * ((raw_start - EPOCH) // step)
    return start, end


def _timestamp(record: Dict[str, Any], field_name: str) -> Optional[datetime]:
    value = record.get(field_name)
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def repository_name(pull_request: Dict[str, Any]) -> str:
    """Repository name from a search result's ``repository_url``."""
    return pull_request.get("repository_url", "").rstrip("/").split("/")[-1]


@dataclass
class ReportResult:
    """What one report run produced."""
    periods: Dict[str, Dict[str, ContributorMetrics]] = field(default_factory=dict)
    ranking: List[RankedUser] = field(default_factory=list)
    statistics: RunStatistics = field(default_factory=RunStatistics)
    files: List[Path] = field(default_factory=list)


class ReportService:
    """Builds the contributor report for an organization.

    Data is fetched once for the longest period and filtered per period, so
    overlapping periods never fetch the same interval twice.
    """

    def __init__(
        self,
        orchestrator: FetchOrchestrator,
        aggregator: MetricsAggregator,
        writer: CsvReportWriter,
        days_in_interval: int = 5,
        clock: Callable[[], datetime] = utc_now
    ):
        self._orchestrator = orchestrator
        self._aggregator = aggregator
        self._writer = writer
        self._days_in_interval = days_in_interval
        self._clock = clock

    async def generate_report(self, owner: str, periods: Dict[int, str] = PERIODS) -> ReportResult:
        """Fetch, aggregate and write the report for every period.

        Args:
            owner: Organization login
            periods: Period length in weeks -> period name

        Returns:
            ReportResult with per-period metrics, the ranking of the longest
            period and the run statistics
        """
        self._orchestrator.reset_statistics()
        now = self._clock()
        start, end = aligned_range(now, max(periods), self._days_in_interval)
        logger.info(f"Generating report for {owner} from {start} to {end}")

        repositories = await self._orchestrator.list_repositories(owner)
        commits = await self._orchestrator.fetch_commits(owner, repositories, start, end)
        pull_requests = await self._orchestrator.fetch_pull_requests(owner, start, end)
        issues = await self._orchestrator.fetch_closed_issues(owner, start, end)

        reviews = {}
        for pull_request in pull_requests:
            if pull_request.get("number") is None:
                continue
            reviews[pull_request.get("id")] = await self._orchestrator.fetch_reviews(
                owner, repository_name(pull_request), pull_request["number"]
            )
        events = {}
        for issue in issues:
            if issue.get("number") is None:
                continue
            events[issue.get("id")] = await self._orchestrator.fetch_issue_events(
                owner, repository_name(issue), issue["number"]
            )

        result = ReportResult()
        for weeks, period_name in sorted(periods.items()):
            period_start = now - timedelta(weeks=weeks)
            metrics = self._aggregate_period(
                period_start, commits, pull_requests, issues, reviews, events
            )
            ranking = rank_users(metrics)
            result.periods[period_name] = metrics
            result.ranking = ranking
            result.files.append(self._writer.write_period(period_name, metrics, ranking))

        result.files.append(self._writer.write_ranking(result.ranking))
        result.statistics = self._orchestrator.statistics
        result.files.append(self._writer.write_run_summary(result.statistics))
        self._log_summary(result.statistics)
        return result

    def _aggregate_period(
        self,
        period_start: datetime,
        commits: List[Dict[str, Any]],
        pull_requests: List[Dict[str, Any]],
        issues: List[Dict[str, Any]],
        reviews: Dict[Any, Dict[str, List[Dict[str, Any]]]],
        events: Dict[Any, List[Dict[str, Any]]]
    ) -> Dict[str, ContributorMetrics]:
        def in_period(record: Dict[str, Any], field_name: str) -> bool:
            timestamp = _timestamp(record, field_name)
            return timestamp is not None and timestamp >= period_start

        metrics: Dict[str, ContributorMetrics] = {}
        self._aggregator.add_commits(
            metrics, [c for c in commits if in_period(c, "committedDate")]
        )
        for pull_request in pull_requests:
            if not in_period(pull_request, "created_at"):
                continue
            self._aggregator.add_pull_request(metrics, pull_request)
            self._aggregator.add_reviews(metrics, reviews.get(pull_request.get("id"), {}))
        for issue in issues:
            if not in_period(issue, "closed_at"):
                continue
            self._aggregator.add_closed_issue(metrics, issue)
            self._aggregator.add_issue_events(metrics, events.get(issue.get("id"), []))
        return metrics

    @staticmethod
    def _log_summary(statistics: RunStatistics) -> None:
        logger.info("=" * 50)
        logger.info("Run Summary:")
        logger.info(f"  Cache hits: {statistics.cache_hits}")
        logger.info(f"  Fresh fetches: {statistics.fresh_fetches}")
        logger.info(f"  Stale fallbacks: {statistics.stale_fallbacks}")
        logger.info(f"  Skipped units: {statistics.skipped}")
        logger.info(f"  Retries: {statistics.retries}")
        logger.info(f"  Rate-limit waits: {statistics.rate_limit_waits}")
        for unit in statistics.skipped_units:
            logger.warning(f"  Skipped: {unit}")
        logger.info("=" * 50)
