"""Export report periods and rankings to CSV files."""
import csv
import logging
import re
from pathlib import Path
from typing import Dict, List, Union
from github_metrics.domain.models import ContributorMetrics, RankedUser, RunStatistics


logger = logging.getLogger(__name__)

PERIOD_COLUMNS = [
    'rank', 'user', 'commits', 'pull_requests', 'reviews', 'rejections', 'score',
    'closed_issues', 'bug_labels', 'enhancement_labels', 'other_labels'
]


def period_file_name(period_name: str) -> str:
    """``Last 2 Weeks`` -> ``last_2_weeks.csv``."""
    return re.sub(r"[^a-z0-9]+", "_", period_name.lower()).strip("_") + ".csv"


class CsvReportWriter:
    """Writes one CSV per reporting period plus the overall ranking."""

    def __init__(self, output_dir: Union[str, Path] = "reports"):
        """Initialize the writer.

        Args:
            output_dir: Directory receiving the CSV files (created if missing)
        """
        self._output_dir = Path(output_dir)

    def _open(self, file_name: str):
        self._output_dir.mkdir(parents=True, exist_ok=True)
        return open(self._output_dir / file_name, 'w', newline='', encoding='utf-8')

    def write_period(
        self,
        period_name: str,
        metrics: Dict[str, ContributorMetrics],
        ranking: List[RankedUser]
    ) -> Path:
        """Write contributor metrics of one period in ranking order.

        Returns:
            Path of the written file
        """
        file_name = period_file_name(period_name)
        with self._open(file_name) as f:
            writer = csv.writer(f)
            writer.writerow(PERIOD_COLUMNS)
            for position, ranked in enumerate(ranking, start=1):
                m = metrics[ranked.user]
                writer.writerow([
                    position, ranked.user, m.commits, m.pull_requests, m.reviews,
                    m.rejections, round(m.score, 1), m.closed_issues,
                    m.bug_labels, m.enhancement_labels, m.other_labels
                ])

        logger.info(f"Exported {len(ranking)} contributors to {self._output_dir / file_name}")
        return self._output_dir / file_name

    def write_ranking(self, ranking: List[RankedUser], file_name: str = "ranking.csv") -> Path:
        with self._open(file_name) as f:
            writer = csv.writer(f)
            writer.writerow(['rank', 'user', 'total_index'])
            for position, ranked in enumerate(ranking, start=1):
                writer.writerow([position, ranked.user, ranked.total_index])
        logger.info(f"Exported ranking of {len(ranking)} contributors")
        return self._output_dir / file_name

    def write_run_summary(self, statistics: RunStatistics, file_name: str = "run_summary.csv") -> Path:
        """Write run counters and the list of skipped units."""
        with self._open(file_name) as f:
            writer = csv.writer(f)
            writer.writerow(['metric', 'value'])
            writer.writerow(['cache_hits', statistics.cache_hits])
            writer.writerow(['fresh_fetches', statistics.fresh_fetches])
            writer.writerow(['stale_fallbacks', statistics.stale_fallbacks])
            writer.writerow(['skipped', statistics.skipped])
            writer.writerow(['retries', statistics.retries])
            writer.writerow(['rate_limit_waits', statistics.rate_limit_waits])
            writer.writerow(['datasets_skipped', statistics.datasets_skipped])
            for unit in statistics.skipped_units:
                writer.writerow(['skipped_unit', unit])
        return self._output_dir / file_name
