"""Query and display statistics about the cache, optionally sweeping or clearing it."""
import argparse
import sys
from github_metrics.config import Settings, load_environment
from github_metrics.domain.models import Dataset
from github_metrics.infrastructure.cache_factory import open_cache_database

# Load environment variables from .env or env file
load_environment()


def print_section(title: str):
    """Print a section header."""
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def display_statistics(database):
    """Display entry counts per dataset namespace."""
    print_section("Cache Entries by Dataset")
    print(f"{'Dataset':<25} {'Total':>10} {'Live':>10} {'Expired':>10}")
    print("-" * 60)

    grand_total = 0
    for dataset in Dataset:
        store = database.namespace(dataset)
        total = store.count()
        live = store.count(include_expired=False)
        grand_total += total
        print(f"{dataset.table_name:<25} {total:>10,} {live:>10,} {total - live:>10,}")

    print("-" * 60)
    print(f"{'All datasets':<25} {grand_total:>10,}")


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--sweep", action="store_true", help="remove expired entries first")
    parser.add_argument(
        "--clear", metavar="DATASET", action="append", default=[],
        help="remove every entry of a dataset (repeatable)"
    )
    args = parser.parse_args()

    settings = Settings.from_env(require_token=False)
    datasets_to_clear = [Dataset.from_slug(name) for name in args.clear]
    database = open_cache_database(settings)
    try:
        if args.sweep:
            print_section("Sweeping Expired Entries")
            for dataset, removed in database.sweep_expired().items():
                print(f"{dataset.table_name:<25} {removed:>10,} removed")

        for dataset in datasets_to_clear:
            removed = database.namespace(dataset).clear()
            print(f"Cleared {removed:,} entries from {dataset.table_name}")

        display_statistics(database)
    finally:
        database.close()

    print("\n" + "=" * 60)
    print("Query completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
