"""One-time transfer of the legacy JSON file cache into the durable store."""
import json
import logging
import random
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from github_metrics.domain.cache_interface import ICacheDatabase
from github_metrics.domain.errors import CacheReadError, MigrationError
from github_metrics.domain.models import Dataset, MigrationResult


logger = logging.getLogger(__name__)

# File name of each dataset in the legacy disk cache.
LEGACY_FILES = {
    Dataset.COMMITS: "commits.json",
    Dataset.PULL_REQUESTS: "prs.json",
    Dataset.PR_REVIEWS: "prs-reviews.json",
    Dataset.ISSUES: "issues.json",
    Dataset.ISSUE_EVENTS: "issue-events.json",
}

PROGRESS_EVERY = 100


class LegacyCacheMigrator:
    """Copies legacy ``key -> value`` JSON files into the cache database.

    Migrated values get no TTL: the legacy cache only ever held historical
    data. Re-running is safe because ``set`` overwrites. The source file is
    never deleted; a ``.backup`` copy is made after a successful transfer.
    """

    def __init__(
        self,
        database: ICacheDatabase,
        legacy_dir: Union[str, Path] = "disk-cache",
        sample_size: int = 10,
        rng: Optional[random.Random] = None
    ):
        """Initialize the migrator.

        Args:
            database: Destination store
            legacy_dir: Directory holding the legacy JSON files
            sample_size: Keys read back and compared after migrating
            rng: Random source used to pick the verification sample
        """
        self._database = database
        self._legacy_dir = Path(legacy_dir)
        self._sample_size = sample_size
        self._rng = rng or random.Random()

    def source_path(self, dataset: Dataset) -> Path:
        """Legacy file of a dataset.

        Raises:
            ValueError: If the legacy cache never held the dataset
        """
        if dataset not in LEGACY_FILES:
            raise ValueError(f"Dataset {dataset.slug} has no legacy cache file")
        return self._legacy_dir / LEGACY_FILES[dataset]

    def _load(self, path: Path) -> Dict[str, Any]:
        """Read the legacy file.

        Raises:
            MigrationError: If the file cannot be read or is not valid JSON
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise MigrationError(f"Cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            return {}
        return data

    def migrate(self, dataset: Dataset) -> MigrationResult:
        """Migrate one dataset and verify a sample of the migrated keys."""
        path = self.source_path(dataset)

        if not path.exists():
            logger.info(f"Source file {path} does not exist, skipping migration")
            return MigrationResult(dataset, str(path), 0, 0, success=True, verified=True,
                                   verification_rate=1.0)

        try:
            data = self._load(path)
        except MigrationError as e:
            logger.error(f"Error during migration of {path}: {e}")
            return MigrationResult(dataset, str(path), 0, 1, success=False)

        if not data:
            logger.info(f"No data found in {path}, skipping migration")
            return MigrationResult(dataset, str(path), 0, 0, success=True, verified=True,
                                   verification_rate=1.0)

        store = self._database.namespace(dataset)
        transferred = 0
        errors = 0
        migrated_keys: List[str] = []
        logger.info(f"Migrating {len(data)} keys from {path} to {dataset.table_name}...")

        for key, value in data.items():
            try:
                if value is None:
                    raise MigrationError(f"Key {key} has a null value")
                if not store.set(key, value):
                    raise MigrationError(f"Key {key} was not persisted")
            except (MigrationError, TypeError, ValueError) as e:
                logger.error(f"Error migrating key {key}: {e}")
                errors += 1
                continue
            transferred += 1
            migrated_keys.append(key)
            if transferred % PROGRESS_EVERY == 0:
                logger.info(f"  Progress: {transferred}/{len(data)} keys migrated")

        success = errors == 0
        rate = self.verify(dataset, data, migrated_keys)
        logger.info(
            f"Completed migration of {path}: {transferred} keys transferred, {errors} errors, "
            f"verification {rate * 100:.2f}%"
        )

        if success and transferred > 0:
            backup_path = path.with_name(path.name + ".backup")
            try:
                shutil.copyfile(path, backup_path)
                logger.info(f"Original file backed up to {backup_path}")
            except OSError as e:
                logger.warning(f"Could not back up {path}: {e}")

        return MigrationResult(
            dataset=dataset,
            source_file=str(path),
            keys_transferred=transferred,
            errors=errors,
            success=success,
            verified=rate == 1.0,
            verification_rate=rate
        )

    def verify(self, dataset: Dataset, source: Dict[str, Any], keys: List[str]) -> float:
        """Read back a sample of keys and compare them to the source values.

        Returns:
            Fraction of sampled keys whose stored value equals the source
        """
        if not keys:
            return 1.0
        store = self._database.namespace(dataset)
        sample = self._rng.sample(keys, min(self._sample_size, len(keys)))
        matches = 0
        for key in sample:
            try:
                entry = store.get_persisted(key)
            except CacheReadError as e:
                logger.error(f"Verification failed for key {key}: {e}")
                continue
            if entry is not None and entry.value == source[key]:
                matches += 1
            else:
                logger.error(f"Verification failed for key {key}: values don't match")
        rate = matches / len(sample)
        logger.info(
            f"Verification for {dataset.table_name}: {matches}/{len(sample)} keys match "
            f"({rate * 100:.2f}%)"
        )
        return rate

    def migrate_all(self) -> List[MigrationResult]:
        """Migrate every dataset that has a legacy file."""
        results = []
        for dataset in LEGACY_FILES:
            result = self.migrate(dataset)
            status = "SUCCESS" if result.success else "FAILED"
            logger.info(
                f"Migration {dataset.table_name}: {status} - {result.keys_transferred} keys "
                f"transferred, {result.errors} errors"
            )
            results.append(result)
        return results
