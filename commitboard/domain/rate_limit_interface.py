"""Rate limit store interface (port)."""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from commitboard.domain.models import RateLimitState
from commitboard.domain.rate_limit import Reservation


class IRateLimitStore(ABC):
    """Shared, durable rate limit state keyed by credential.

    Both operations must be atomic across processes; they apply
    ``commitboard.domain.rate_limit.reserve`` / ``merge`` under a lock.
    """

    @abstractmethod
    def try_reserve(self, key: str, threshold: int, now: datetime) -> Reservation:
        pass

    @abstractmethod
    def record(self, state: RateLimitState) -> RateLimitState:
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[RateLimitState]:
        pass

    @abstractmethod
    def list_states(self) -> List[RateLimitState]:
        pass
