"""Two-tier identity cache: process memory first, durable contributor rows second."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from commitboard.domain.models import Contributor
from commitboard.domain.storage_interface import IPipelineStorage


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityCache:
    """Maps an author email to its last known Contributor.

    Entries older than the freshness window are ignored in both tiers, which
    sends the email back to the identity API on its next encounter.
    """

    def __init__(
        self,
        storage: IPipelineStorage,
        freshness_window: timedelta = timedelta(hours=24),
        clock=utcnow
    ):
        self._storage = storage
        self._window = freshness_window
        self._clock = clock
        self._memory: Dict[str, Contributor] = {}
        self.memory_hits = 0
        self.durable_hits = 0

    def get(self, email: str) -> Optional[Contributor]:
        now = self._clock()

        contributor = self._memory.get(email)
        if contributor is not None:
            if contributor.is_fresh(now, self._window):
                self.memory_hits += 1
                return contributor
            del self._memory[email]

        contributor = self._storage.get_contributor(email)
        if contributor is not None and contributor.is_fresh(now, self._window):
            self.durable_hits += 1
            self._memory[email] = contributor
            return contributor

        return None

    def put(self, contributor: Contributor) -> None:
        self._memory[contributor.email] = contributor

    def invalidate(self, email: str) -> None:
        self._memory.pop(email, None)

    def __len__(self) -> int:
        return len(self._memory)
