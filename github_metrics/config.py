"""Runtime configuration read once from the environment at process start."""
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional
from dotenv import load_dotenv
from github_metrics.application.metrics_service import DEFAULT_BLACKLISTED_USERS
from github_metrics.domain.models import Dataset, RunModes


logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}


def load_environment() -> None:
    """Load environment variables from .env or env file."""
    load_dotenv('.env') or load_dotenv('env')


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in TRUE_VALUES


def parse_skip_datasets(value: Optional[str]) -> FrozenSet[Dataset]:
    """Parse a comma separated list of dataset names.

    Raises:
        ValueError: On an unknown dataset name
    """
    if not value:
        return frozenset()
    return frozenset(
        Dataset.from_slug(name) for name in value.split(",") if name.strip()
    )


def parse_aliases(value: Optional[str]) -> Dict[str, str]:
    """Parse ``name=login,other name=login2`` into a lowercase mapping."""
    aliases: Dict[str, str] = {}
    for pair in (value or "").split(","):
        if "=" not in pair:
            continue
        name, login = pair.split("=", 1)
        if name.strip() and login.strip():
            aliases[name.strip().lower()] = login.strip().lower()
    return aliases


def load_run_modes() -> RunModes:
    """Read OFFLINE_MODE, FORCE_REFRESH and SKIP_DATASETS.

    Offline mode wins over force-refresh, since it forbids network access.
    """
    offline = _flag("OFFLINE_MODE")
    force_refresh = _flag("FORCE_REFRESH")
    if offline and force_refresh:
        logger.warning("OFFLINE_MODE and FORCE_REFRESH are both set; running offline")
        force_refresh = False
    return RunModes(
        offline=offline,
        force_refresh=force_refresh,
        skip_datasets=parse_skip_datasets(os.getenv("SKIP_DATASETS"))
    )


@dataclass(frozen=True)
class Settings:
    """All settings of a report run."""
    github_token: Optional[str]
    github_org: str
    cache_backend: str = "sqlite"
    cache_db_path: str = os.path.join("disk-cache", "cache.db")
    postgres_host: str = "localhost"
    postgres_port: str = "5432"
    postgres_db: str = "github_metrics"
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    legacy_cache_dir: str = "disk-cache"
    report_dir: str = "reports"
    days_in_interval: int = 5
    ttl_recent_hours: float = 6
    ttl_today_hours: float = 3
    ttl_repositories_hours: float = 24
    rate_limit_buffer: int = 5
    max_retries: int = 5
    retry_base_delay: float = 3.0
    run_lock_stale_hours: float = 6
    blacklisted_users: FrozenSet[str] = DEFAULT_BLACKLISTED_USERS
    author_aliases: Dict[str, str] = field(default_factory=dict)
    modes: RunModes = field(default_factory=RunModes)

    @property
    def postgres_connection_string(self) -> str:
        """Build PostgreSQL connection string."""
        return (
            f"host={self.postgres_host} port={self.postgres_port} "
            f"dbname={self.postgres_db} user={self.postgres_user} "
            f"password={self.postgres_password}"
        )

    @classmethod
    def from_env(cls, require_token: bool = True) -> "Settings":
        """Build settings from environment variables.

        Args:
            require_token: Fail when GITHUB_TOKEN is missing. Offline runs
                and the migration tool do not need it.

        Raises:
            ValueError: If a required variable is missing or malformed
        """
        modes = load_run_modes()
        github_token = os.getenv("GITHUB_TOKEN")
        if require_token and not modes.offline and not github_token:
            raise ValueError("GITHUB_TOKEN environment variable is required")

        github_org = os.getenv("GITHUB_ORG", "")

        backend = os.getenv("CACHE_BACKEND", "sqlite").strip().lower()
        if backend not in ("sqlite", "postgres"):
            raise ValueError(f"CACHE_BACKEND must be 'sqlite' or 'postgres', got {backend!r}")

        return cls(
            github_token=github_token,
            github_org=github_org,
            cache_backend=backend,
            cache_db_path=os.getenv("CACHE_DB_PATH", os.path.join("disk-cache", "cache.db")),
            postgres_host=os.getenv("POSTGRES_HOST", "localhost"),
            postgres_port=os.getenv("POSTGRES_PORT", "5432"),
            postgres_db=os.getenv("POSTGRES_DB", "github_metrics"),
            postgres_user=os.getenv("POSTGRES_USER", "postgres"),
            postgres_password=os.getenv("POSTGRES_PASSWORD", "postgres"),
            legacy_cache_dir=os.getenv("LEGACY_CACHE_DIR", "disk-cache"),
            report_dir=os.getenv("REPORT_DIR", "reports"),
            days_in_interval=int(os.getenv("DAYS_IN_INTERVAL", "5")),
            ttl_recent_hours=float(os.getenv("CACHE_TTL_RECENT_HOURS", "6")),
            ttl_today_hours=float(os.getenv("CACHE_TTL_TODAY_HOURS", "3")),
            ttl_repositories_hours=float(os.getenv("CACHE_TTL_REPOSITORIES_HOURS", "24")),
            rate_limit_buffer=int(os.getenv("RATE_LIMIT_BUFFER", "5")),
            max_retries=int(os.getenv("MAX_RETRIES", "5")),
            retry_base_delay=float(os.getenv("RETRY_BASE_DELAY", "3.0")),
            run_lock_stale_hours=float(os.getenv("RUN_LOCK_STALE_HOURS", "6")),
            blacklisted_users=DEFAULT_BLACKLISTED_USERS | frozenset(
                user.strip().lower()
                for user in os.getenv("BLACKLISTED_USERS", "").split(",")
                if user.strip()
            ),
            author_aliases=parse_aliases(os.getenv("AUTHOR_ALIASES")),
            modes=modes
        )
