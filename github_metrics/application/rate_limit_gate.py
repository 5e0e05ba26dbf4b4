"""Rate-limit gate consulted before every upstream request."""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional
from github_metrics.domain.errors import QuotaExceeded
from github_metrics.domain.github_interface import IGitHubClient
from github_metrics.domain.models import Quota, QuotaStatus, utc_now


logger = logging.getLogger(__name__)

RESET_MARGIN_SECONDS = 1


class RateLimitGate:
    """Keeps requests within the upstream quota.

    The gate remembers the last quota observed in a response for each
    rate-limit resource (``search``, ``graphql``, ``core``) and only asks
    the quota endpoint when it has nothing fresher.
    """

    def __init__(
        self,
        client: IGitHubClient,
        buffer: int = 5,
        max_waits: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now
    ):
        """Initialize the gate.

        Args:
            client: Source of quota information
            buffer: Requests kept in reserve; at or below it the gate closes
            max_waits: Consecutive reset waits allowed for a single request
            sleep: Coroutine used to wait out a reset
            clock: Returns the current aware UTC datetime
        """
        self._client = client
        self._buffer = buffer
        self._max_waits = max_waits
        self._sleep = sleep
        self._clock = clock
        self._observed: Dict[str, Quota] = {}
        self.waits = 0

    def observe(self, quota: Optional[Quota]) -> None:
        """Record the quota reported alongside a response."""
        if quota is not None:
            self._observed[quota.resource] = quota

    async def check_quota(self, resource: str) -> QuotaStatus:
        """Decide whether a request against ``resource`` may go out now.

        Fails open when the quota itself cannot be read.
        """
        quota = self._observed.get(resource)
        if quota is None:
            try:
                quota = await self._client.get_quota(resource)
            except Exception as e:
                logger.warning(f"Quota check for {resource} failed, proceeding anyway: {e}")
                return QuotaStatus(allowed=True)
            self._observed[resource] = quota

        if quota.remaining > self._buffer:
            return QuotaStatus(allowed=True)
        if quota.reset_at is not None and quota.reset_at <= self._clock():
            # The window has already rolled over.
            self._observed.pop(resource, None)
            return QuotaStatus(allowed=True)
        return QuotaStatus(allowed=False, reset_at=quota.reset_at)

    async def wait_for_reset(self, reset_at: datetime, resource: Optional[str] = None) -> None:
        """Sleep until ``reset_at`` and forget the quota it applied to."""
        wait_time = max(0.0, (reset_at - self._clock()).total_seconds()) + RESET_MARGIN_SECONDS
        logger.warning(
            f"Rate limit nearly exhausted. Waiting {wait_time:.0f} seconds "
            f"until reset at {reset_at}"
        )
        self.waits += 1
        await self._sleep(wait_time)
        if resource is not None:
            self._observed.pop(resource, None)
        else:
            self._observed.clear()

    async def acquire(self, resource: str) -> None:
        """Wait until a request against ``resource`` is allowed.

        Raises:
            QuotaExceeded: If the reset time is unknown, or the quota is still
                exhausted after ``max_waits`` waits
        """
        waits = 0
        while True:
            status = await self.check_quota(resource)
            if status.allowed:
                return
            if status.reset_at is None:
                raise QuotaExceeded(f"Quota for {resource} exhausted with unknown reset time")
            if waits >= self._max_waits:
                raise QuotaExceeded(
                    f"Quota for {resource} still exhausted after {self._max_waits} waits"
                )
            await self.wait_for_reset(status.reset_at, resource)
            waits += 1
