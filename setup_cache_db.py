"""Cache database initialization script.

Creates one table per dataset, each indexed on expires_at so expired rows
can be swept efficiently. Safe to run repeatedly.
"""
import sys
import logging
from github_metrics.config import Settings, load_environment
from github_metrics.domain.errors import CacheInitializationError
from github_metrics.domain.models import Dataset
from github_metrics.infrastructure.cache_factory import open_cache_database

# Load environment variables from .env or env file
load_environment()


logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def main():
    """Initialize the cache database."""
    try:
        settings = Settings.from_env(require_token=False)
        logger.info(f"Connecting to {settings.cache_backend} cache...")

        database = open_cache_database(settings)
        try:
            database.create_schema()
            for dataset in Dataset:
                logger.info(f"  {dataset.table_name}: ready")
        finally:
            database.close()

        logger.info("Cache initialization completed successfully")

    except (CacheInitializationError, ValueError) as e:
        logger.error(f"Failed to initialize cache: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
