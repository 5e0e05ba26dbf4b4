"""Main entry point for the GitHub metrics report.

Opens the cache, takes the run lock and generates the per-period contributor
report for the configured organization.
"""
import asyncio
import os
import signal
import socket
import sys
import logging
from github_metrics.application.fetch_orchestrator import FetchOrchestrator
from github_metrics.application.metrics_service import MetricsAggregator
from github_metrics.application.rate_limit_gate import RateLimitGate
from github_metrics.application.report_service import ReportService
from github_metrics.config import Settings, load_environment
from github_metrics.domain.errors import CacheInitializationError, RunLockError
from github_metrics.domain.ttl_policy import TTLPolicy
from github_metrics.infrastructure.cache_factory import open_cache_database
from github_metrics.infrastructure.csv_report_writer import CsvReportWriter
from github_metrics.infrastructure.github_client import GitHubClient

# Load environment variables from .env or env file
load_environment()


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main():
    """Execute one report run."""
    try:
        settings = Settings.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if not settings.github_org:
        logger.error("GITHUB_ORG environment variable is required")
        sys.exit(1)

    modes = settings.modes
    logger.info(
        f"Starting GitHub metrics report for {settings.github_org} "
        f"(offline={modes.offline}, force_refresh={modes.force_refresh}, "
        f"skip={sorted(d.slug for d in modes.skip_datasets)})"
    )

    try:
        database = open_cache_database(settings)
    except CacheInitializationError as e:
        logger.error(f"Cannot open cache: {e}")
        sys.exit(1)

    github_client = GitHubClient(settings.github_token or "")

    try:
        database.acquire_run_lock(f"{socket.gethostname()}:{os.getpid()}")
        swept = sum(database.sweep_expired().values())
        logger.info(f"Swept {swept} expired cache entries")

        gate = RateLimitGate(github_client, buffer=settings.rate_limit_buffer)
        orchestrator = FetchOrchestrator(
            github_client=github_client,
            database=database,
            ttl_policy=TTLPolicy(
                recent_hours=settings.ttl_recent_hours,
                today_hours=settings.ttl_today_hours,
                repositories_hours=settings.ttl_repositories_hours
            ),
            gate=gate,
            modes=modes,
            days_in_interval=settings.days_in_interval,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay
        )
        report = ReportService(
            orchestrator=orchestrator,
            aggregator=MetricsAggregator(
                aliases=settings.author_aliases,
                blacklist=settings.blacklisted_users
            ),
            writer=CsvReportWriter(settings.report_dir),
            days_in_interval=settings.days_in_interval
        )

        result = await report.generate_report(settings.github_org)

        logger.info("Aggregate ranking:")
        for position, ranked in enumerate(result.ranking, start=1):
            logger.info(f"  {position}. {ranked.user}")
        logger.info(f"Report written to {settings.report_dir} ({len(result.files)} files)")

    except RunLockError as e:
        logger.error(f"Another run is in progress: {e}")
        sys.exit(1)
    except asyncio.CancelledError:
        logger.warning("Report run cancelled")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Report run failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await github_client.close()
        database.close()


async def run():
    """Run main() so SIGINT/SIGTERM cancel it and the cache still gets closed."""
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except NotImplementedError:
            # Signal handlers are unavailable on Windows event loops.
            logger.debug(f"Cannot install handler for {sig.name}")
    await main()


if __name__ == "__main__":
    asyncio.run(run())
