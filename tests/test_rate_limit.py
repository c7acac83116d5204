"""Tests for rate limit reservation rules and the coordinator."""
import asyncio
from datetime import timedelta

from commitboard.application.rate_limit_coordinator import (
    UNKNOWN_RESET_WAIT_SECONDS,
    RateLimitCoordinator,
)
from commitboard.domain.models import RateLimitState
from commitboard.domain.rate_limit import ANONYMOUS_KEY, FIRST_CALL_WINDOW, credential_key, merge, reserve

from fakes import T0, Clock, InMemoryRateLimitStore

KEY = credential_key("ghp_test")


def state(remaining, reset_in_minutes=30, limit=5000):
    reset_at = None if reset_in_minutes is None else T0 + timedelta(minutes=reset_in_minutes)
    return RateLimitState(KEY, remaining, reset_at, limit)


def test_credential_key_is_stable_and_opaque():
    """Test credential keys never contain the token."""
    assert credential_key("ghp_test") == KEY
    assert "ghp_test" not in KEY
    assert credential_key(None) == ANONYMOUS_KEY


def test_reserve_unknown_state_grants_one_call():
    """Test only one call goes out before any budget is known."""
    seeded, first = reserve(KEY, None, 10, T0)
    _, second = reserve(KEY, seeded, 10, T0)

    assert first.granted
    assert seeded.limit == 0
    assert not second.granted
    assert second.wait_until == T0 + FIRST_CALL_WINDOW


def test_unanswered_first_call_is_retried_after_window():
    """Test a first call that never reported back frees the next window."""
    seeded, _ = reserve(KEY, None, 10, T0)

    reseeded, reservation = reserve(KEY, seeded, 10, T0 + FIRST_CALL_WINDOW)

    assert reservation.granted
    assert reseeded.reset_at == T0 + 2 * FIRST_CALL_WINDOW


def test_merge_replaces_unobserved_budget():
    """Test the first real response replaces the seeded placeholder."""
    seeded, _ = reserve(KEY, None, 10, T0)

    merged = merge(seeded, state(4999, reset_in_minutes=0.5))

    assert merged.remaining == 4999
    assert merged.limit == 5000


def test_reserve_above_threshold_consumes_budget():
    """Test a granted reservation decrements remaining."""
    new_state, reservation = reserve(KEY, state(11), 10, T0)

    assert reservation.granted
    assert new_state.remaining == 10


def test_reserve_at_threshold_waits_for_reset():
    """Test low budget returns the reset time to wait for."""
    current = state(10)

    new_state, reservation = reserve(KEY, current, 10, T0)

    assert not reservation.granted
    assert reservation.wait_until == current.reset_at
    assert new_state == current


def test_reserve_after_reset_renews_budget():
    """Test an elapsed window renews the budget."""
    new_state, reservation = reserve(KEY, state(0, reset_in_minutes=-1), 10, T0)

    assert reservation.granted
    assert new_state.remaining == 4999
    assert new_state.reset_at is None


def test_reserve_low_budget_unknown_reset_denies():
    """Test low budget without a reset time is not granted."""
    _, reservation = reserve(KEY, state(3, reset_in_minutes=None), 10, T0)

    assert not reservation.granted
    assert reservation.wait_until is None


def test_merge_keeps_lowest_remaining_in_same_window():
    """Test out-of-order responses cannot raise the remaining count."""
    assert merge(state(100), state(120)).remaining == 100
    assert merge(state(120), state(100)).remaining == 100


def test_merge_newer_window_replaces_older():
    """Test a response from the next window resets the budget."""
    merged = merge(state(3, reset_in_minutes=1), state(4990, reset_in_minutes=61))

    assert merged.remaining == 4990


def test_merge_older_window_is_ignored():
    """Test a late response from the previous window is dropped."""
    current = state(4990, reset_in_minutes=61)

    assert merge(current, state(3, reset_in_minutes=1)) == current


def test_merge_clamps_negative_remaining():
    """Test remaining never goes below zero."""
    assert merge(None, state(-2)).remaining == 0


def test_coordinator_waits_until_reset_plus_buffer():
    """Test a low budget suspends the caller until after the reset."""
    store = InMemoryRateLimitStore()
    store.record(state(5, reset_in_minutes=2))
    clock = Clock()
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds=seconds)

    coordinator = RateLimitCoordinator(store, 10, 5.0, sleep=fake_sleep, clock=clock)
    asyncio.run(coordinator.acquire(KEY))

    assert sleeps == [125.0]
    assert coordinator.waits == 1


def test_coordinator_unknown_reset_waits_fixed_interval():
    """Test a low budget with unknown reset waits a fixed interval."""
    store = InMemoryRateLimitStore()
    store.record(state(5, reset_in_minutes=None))
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        store.record(state(5000, reset_in_minutes=60))

    coordinator = RateLimitCoordinator(store, 10, 5.0, sleep=fake_sleep, clock=Clock())
    asyncio.run(coordinator.acquire(KEY))

    assert sleeps == [UNKNOWN_RESET_WAIT_SECONDS]


def test_concurrent_acquires_never_overdraw():
    """Test many concurrent callers never push remaining below the threshold."""
    store = InMemoryRateLimitStore()
    store.record(state(30, reset_in_minutes=10))
    clock = Clock()
    granted_before_reset = []

    async def fake_sleep(seconds):
        await asyncio.sleep(0)
        clock.now = T0 + timedelta(minutes=11)

    coordinator = RateLimitCoordinator(store, 10, 0.0, sleep=fake_sleep, clock=clock)

    async def caller():
        await coordinator.acquire(KEY)
        if clock.now < T0 + timedelta(minutes=10):
            granted_before_reset.append(1)

    async def run():
        await asyncio.gather(*(caller() for _ in range(50)))

    asyncio.run(run())

    assert len(granted_before_reset) == 20
    assert store.get(KEY).remaining >= 0


def test_coordinator_record_ignores_missing_metadata():
    """Test responses without rate limit metadata are ignored."""
    store = InMemoryRateLimitStore()
    coordinator = RateLimitCoordinator(store)

    coordinator.record(None)

    assert store.list_states() == []


def test_concurrent_first_calls_wait_for_first_response():
    """Test callers racing on an unknown budget let only one call through."""
    store = InMemoryRateLimitStore()
    granted = []

    async def fake_sleep(seconds):
        await asyncio.sleep(0)
        store.record(state(4999, reset_in_minutes=60))

    coordinator = RateLimitCoordinator(store, 10, 0.0, sleep=fake_sleep, clock=Clock())

    async def caller(i):
        await coordinator.acquire(KEY)
        granted.append(i)

    async def run():
        await asyncio.gather(*(caller(i) for i in range(5)))

    asyncio.run(run())

    assert granted[0] == 0
    assert sorted(granted) == [0, 1, 2, 3, 4]
    assert coordinator.waits == 4
