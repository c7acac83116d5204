"""Rate limit coordination shared by every identity resolution worker."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from commitboard.domain.models import RateLimitState
from commitboard.domain.rate_limit_interface import IRateLimitStore


logger = logging.getLogger(__name__)

# Used when the budget is low but no reset time has been observed yet.
UNKNOWN_RESET_WAIT_SECONDS = 60.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitCoordinator:
    """Gatekeeper in front of every external identity call.

    The budget lives in a shared store, not in this object, so workers in
    different processes draw from the same ``remaining`` count.
    """

    def __init__(
        self,
        store: IRateLimitStore,
        safety_threshold: int = 10,
        wait_buffer_seconds: float = 5.0,
        sleep=asyncio.sleep,
        clock=utcnow
    ):
        self._store = store
        self._threshold = safety_threshold
        self._buffer = wait_buffer_seconds
        self._sleep = sleep
        self._clock = clock
        self.waits = 0

    async def acquire(self, key: str) -> None:
        """Reserve one call for ``key``, suspending until the window resets if needed."""
        while True:
            now = self._clock()
            reservation = self._store.try_reserve(key, self._threshold, now)
            if reservation.granted:
                return

            if reservation.wait_until is None:
                wait_time = UNKNOWN_RESET_WAIT_SECONDS
            else:
                wait_time = max((reservation.wait_until - now).total_seconds(), 0) + self._buffer

            self.waits += 1
            logger.warning(
                f"Rate limit nearly exhausted for {key}. Waiting {wait_time:.0f} seconds "
                f"until reset at {reservation.wait_until}"
            )
            await self._sleep(wait_time)

    def record(self, state: Optional[RateLimitState]) -> None:
        """Fold the metadata of a response (successful or not) into the shared state."""
        if state is None:
            return
        stored = self._store.record(state)
        logger.debug(
            f"Rate limit {stored.key}: {stored.remaining}/{stored.limit} remaining, "
            f"resets at {stored.reset_at}"
        )

    def current(self, key: str) -> Optional[RateLimitState]:
        return self._store.get(key)
