"""GitHub API interface (port) for fetching pages of activity records.

This is the anti-corruption layer that shields the cache and orchestration
logic from GitHub API specifics.
"""
from abc import ABC, abstractmethod
from typing import Optional
from github_metrics.domain.models import FetchUnit, Page, Quota


class IGitHubClient(ABC):
    """Abstract interface for GitHub API operations."""

    @abstractmethod
    async def fetch_page(self, unit: FetchUnit, cursor: Optional[str] = None) -> Page:
        """Fetch one page of records for a fetch unit.

        Args:
            unit: What to fetch (dataset, owner, repository/number, interval)
            cursor: Opaque cursor from the previous page, None for the first

        Returns:
            The page, with its continuation cursor

        Raises:
            QuotaExceeded: The request was rejected by the rate limit
            TransientNetworkError: A retryable failure
            PermanentQueryError: A non-retryable rejection
        """
        pass

    @abstractmethod
    async def get_quota(self, resource: str) -> Quota:
        """Return the remaining quota for a rate-limit resource."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        pass
