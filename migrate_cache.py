"""Migrate the legacy JSON disk cache into the cache database.

Usage: python migrate_cache.py [dataset ...]
Without arguments every dataset with a legacy file is migrated.
"""
import sys
import logging
from github_metrics.application.migration_service import LEGACY_FILES, LegacyCacheMigrator
from github_metrics.config import Settings, load_environment
from github_metrics.domain.errors import CacheInitializationError
from github_metrics.domain.models import Dataset
from github_metrics.infrastructure.cache_factory import open_cache_database

# Load environment variables from .env or env file
load_environment()


logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def parse_datasets(dataset_names):
    """Datasets named on the command line.

    Raises:
        ValueError: On an unknown dataset or one without a legacy file
    """
    datasets = [Dataset.from_slug(name) for name in dataset_names]
    for dataset in datasets:
        if dataset not in LEGACY_FILES:
            supported = ", ".join(d.slug for d in LEGACY_FILES)
            raise ValueError(f"{dataset.slug} has no legacy cache file (choose from: {supported})")
    return datasets


def main(dataset_names):
    """Run the migration and report per-dataset results."""
    try:
        settings = Settings.from_env(require_token=False)
        datasets = parse_datasets(dataset_names)
    except ValueError as e:
        logger.error(f"Invalid arguments: {e}")
        sys.exit(1)

    try:
        database = open_cache_database(settings)
    except CacheInitializationError as e:
        logger.error(f"Cannot open cache: {e}")
        sys.exit(1)

    try:
        migrator = LegacyCacheMigrator(database, settings.legacy_cache_dir)
        if datasets:
            results = [migrator.migrate(dataset) for dataset in datasets]
        else:
            results = migrator.migrate_all()
    finally:
        database.close()

    logger.info("=" * 50)
    logger.info("Migration Summary:")
    for result in results:
        logger.info(
            f"  {result.dataset.table_name}: {result.keys_transferred} keys, "
            f"{result.errors} errors, verification {result.verification_rate * 100:.2f}%"
        )
    total_keys = sum(r.keys_transferred for r in results)
    total_errors = sum(r.errors for r in results)
    logger.info(f"Total: {total_keys} keys migrated, {total_errors} errors")
    logger.info("=" * 50)

    if all(r.success and r.verified for r in results):
        logger.info("Migration completed successfully; the JSON files can be deleted if desired")
    else:
        logger.error("Migration completed with issues, review the errors above")
        sys.exit(1)


if __name__ == "__main__":
    main(sys.argv[1:])
