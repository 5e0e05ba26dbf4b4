"""Verify that the setup is correct before running the report."""
import asyncio
import os
import sys
from github_metrics.config import Settings, load_environment
from github_metrics.domain.models import Dataset
from github_metrics.infrastructure.cache_factory import open_cache_database
from github_metrics.infrastructure.github_client import GitHubClient

# Load environment variables from .env or env file
load_environment()


def check_environment_variables():
    """Check required environment variables."""
    print("Checking environment variables...")

    required_vars = ["GITHUB_TOKEN", "GITHUB_ORG"]
    optional_vars = [
        "CACHE_BACKEND", "CACHE_DB_PATH", "OFFLINE_MODE", "FORCE_REFRESH",
        "SKIP_DATASETS", "DAYS_IN_INTERVAL", "REPORT_DIR"
    ]

    missing = [var for var in required_vars if not os.getenv(var)]
    if missing:
        print(f"❌ Missing required environment variables: {', '.join(missing)}")
        return False

    print("✅ Required environment variables set")

    for var in optional_vars:
        if os.getenv(var):
            print(f"   {var}: {os.getenv(var)}")

    return True


def check_configuration():
    """Check that every setting parses."""
    print("\nChecking configuration...")
    try:
        settings = Settings.from_env(require_token=False)
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        return False

    modes = settings.modes
    print(f"✅ Configuration valid (backend: {settings.cache_backend})")
    print(f"   Offline: {modes.offline}, force refresh: {modes.force_refresh}")
    if modes.skip_datasets:
        print(f"   Skipping: {', '.join(sorted(d.slug for d in modes.skip_datasets))}")
    return True


def check_cache():
    """Check that the cache opens and report its size."""
    print("\nChecking cache...")
    try:
        settings = Settings.from_env(require_token=False)
        database = open_cache_database(settings)
    except Exception as e:
        print(f"❌ Failed to open cache: {e}")
        return False

    try:
        total = sum(database.namespace(dataset).count() for dataset in Dataset)
        print(f"✅ Cache opened ({settings.cache_backend})")
        print(f"   Current entry count: {total}")
        return True
    finally:
        database.close()


async def _read_quota(token: str):
    client = GitHubClient(token)
    try:
        return [await client.get_quota(resource) for resource in ("core", "search", "graphql")]
    finally:
        await client.close()


def check_github_token():
    """Verify GitHub token is valid and report its quota."""
    print("\nChecking GitHub token...")

    token = os.getenv("GITHUB_TOKEN")
    if not token:
        print("❌ GITHUB_TOKEN not set")
        return False

    if not (token.startswith("ghp_") or token.startswith("github_pat_")):
        print("⚠️  GitHub token format not recognized")

    try:
        quotas = asyncio.run(_read_quota(token))
    except Exception as e:
        print(f"❌ Could not reach the GitHub API: {e}")
        return False

    print("✅ GitHub token accepted")
    for quota in quotas:
        print(f"   {quota.resource}: {quota.remaining} remaining, resets at {quota.reset_at}")
    return True


def main():
    """Run all verification checks."""
    print("=" * 60)
    print("GitHub Metrics - Setup Verification")
    print("=" * 60)

    checks = [
        ("Environment Variables", check_environment_variables),
        ("Configuration", check_configuration),
        ("Cache", check_cache),
        ("GitHub Token", check_github_token),
    ]

    results = {}
    for name, check_func in checks:
        try:
            results[name] = check_func()
        except Exception as e:
            print(f"❌ {name} check failed with exception: {e}")
            results[name] = False

    print("\n" + "=" * 60)
    print("Verification Summary")
    print("=" * 60)

    for name, passed in results.items():
        status = "✅ PASS" if passed else "❌ FAIL"
        print(f"{status}: {name}")

    if all(results.values()):
        print("\n✅ All checks passed! Ready to generate the report.")
        print("\nNext steps:")
        print("  python migrate_cache.py   # once, if a legacy disk-cache exists")
        print("  python generate_report.py")
        sys.exit(0)
    else:
        print("\n❌ Some checks failed. Please fix the issues above.")
        print("\nCommon solutions:")
        print("  - Set GITHUB_TOKEN and GITHUB_ORG in .env")
        print("  - For PostgreSQL: set CACHE_BACKEND=postgres and run python setup_cache_db.py")
        print("  - Offline runs: set OFFLINE_MODE=true to use only cached data")
        sys.exit(1)


if __name__ == "__main__":
    main()
