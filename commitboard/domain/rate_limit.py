"""Rate limit reservation rules shared by every rate limit store.

Stores hold the state durably and apply these functions inside a single
atomic read-modify-write, so all workers see one budget per credential.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from commitboard.domain.models import RateLimitState

ANONYMOUS_KEY = "anonymous"
FIRST_CALL_WINDOW = timedelta(seconds=60)


@dataclass(frozen=True)
class Reservation:
    """Result of trying to reserve one external call."""
    granted: bool
    wait_until: Optional[datetime] = None


def credential_key(token: Optional[str]) -> str:
    """Stable, non-reversible key for a credential."""
    if not token:
        return ANONYMOUS_KEY
    return "token:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


def _unobserved(key: str, now: datetime) -> RateLimitState:
    # limit 0 marks a budget no response has reported yet
    return RateLimitState(key=key, remaining=0, reset_at=now + FIRST_CALL_WINDOW, limit=0)


def reserve(
    key: str,
    state: Optional[RateLimitState],
    threshold: int,
    now: datetime
) -> Tuple[RateLimitState, Reservation]:
    """Decide whether one more call may be issued and consume budget if so.

    Until a response reports the real budget, a single call is granted per
    ``FIRST_CALL_WINDOW``; concurrent first callers wait for that response.

    Returns the state to persist and the reservation decision.
    """
    if state is None:
        return _unobserved(key, now), Reservation(granted=True)

    if state.reset_at is not None and state.reset_at <= now:
        if state.limit <= 0:
            # The first call never reported back
            return _unobserved(key, now), Reservation(granted=True)
        # Window rolled over. Assume a full budget until a response says otherwise.
        renewed = RateLimitState(
            key=state.key,
            remaining=max(state.limit - 1, 0),
            reset_at=None,
            limit=state.limit,
        )
        return renewed, Reservation(granted=True)

    if state.remaining > threshold:
        consumed = RateLimitState(
            key=state.key,
            remaining=state.remaining - 1,
            reset_at=state.reset_at,
            limit=state.limit,
        )
        return consumed, Reservation(granted=True)

    # Low budget. wait_until stays None when the reset time is not known yet.
    return state, Reservation(granted=False, wait_until=state.reset_at)


def merge(existing: Optional[RateLimitState], observed: RateLimitState) -> RateLimitState:
    """Fold an observed response into the stored state.

    Responses from concurrent calls arrive out of order, so within the same
    window the lowest remaining count wins. A later window replaces the old one.
    """
    remaining = max(observed.remaining, 0)
    if (
        existing is None
        or existing.limit <= 0
        or existing.reset_at is None
        or observed.reset_at is None
    ):
        return RateLimitState(observed.key, remaining, observed.reset_at, observed.limit)
    if observed.reset_at > existing.reset_at:
        return RateLimitState(observed.key, remaining, observed.reset_at, observed.limit)
    if observed.reset_at < existing.reset_at:
        return existing
    return RateLimitState(
        key=observed.key,
        remaining=min(existing.remaining, remaining),
        reset_at=observed.reset_at,
        limit=observed.limit,
    )
