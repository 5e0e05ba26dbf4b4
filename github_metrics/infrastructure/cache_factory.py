"""Builds the configured cache database."""
from github_metrics.config import Settings
from github_metrics.domain.cache_interface import ICacheDatabase


def open_cache_database(settings: Settings) -> ICacheDatabase:
    """Open the durable store selected by CACHE_BACKEND.

    Raises:
        CacheInitializationError: If the store cannot be opened
    """
    if settings.cache_backend == "postgres":
        from github_metrics.infrastructure.postgres_cache_store import PostgresCacheDatabase
        database = PostgresCacheDatabase(settings.postgres_connection_string)
        try:
            database.create_schema()
        except Exception:
            database.close()
            raise
        return database

    from github_metrics.infrastructure.sqlite_cache_store import SQLiteCacheDatabase
    return SQLiteCacheDatabase(
        settings.cache_db_path,
        lock_stale_hours=settings.run_lock_stale_hours
    )
