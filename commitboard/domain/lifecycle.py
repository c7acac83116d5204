"""Repository lifecycle state machine.

    pending -> commits_processing -> users_processing -> completed
                       |                     \\-> completed_partial
                       \\-> failed

Terminal repositories re-enter ``pending`` on re-submission. A retried
extraction attempt re-enters ``commits_processing`` from ``failed`` or from
an interrupted ``commits_processing``. A repository with no authors skips
``users_processing``.
"""
from typing import Dict, FrozenSet

from commitboard.domain.errors import InvalidStateTransition
from commitboard.domain.models import RepositoryState

S = RepositoryState

ALLOWED_TRANSITIONS: Dict[RepositoryState, FrozenSet[RepositoryState]] = {
    S.PENDING: frozenset({S.PENDING, S.COMMITS_PROCESSING, S.FAILED}),
    S.COMMITS_PROCESSING: frozenset({
        S.COMMITS_PROCESSING, S.USERS_PROCESSING, S.COMPLETED, S.FAILED,
    }),
    S.USERS_PROCESSING: frozenset({S.COMPLETED, S.COMPLETED_PARTIAL}),
    S.COMPLETED: frozenset({S.PENDING}),
    S.COMPLETED_PARTIAL: frozenset({S.PENDING}),
    S.FAILED: frozenset({S.PENDING, S.COMMITS_PROCESSING}),
}


def can_transition(current: RepositoryState, target: RepositoryState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def sources_for(target: RepositoryState) -> FrozenSet[RepositoryState]:
    """All states from which ``target`` is reachable in one step."""
    return frozenset(
        state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


def ensure_transition(current: RepositoryState, target: RepositoryState) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"Cannot move repository from {current.value} to {target.value}"
        )


def resolution_outcome(total_aggregates: int, resolved_aggregates: int) -> RepositoryState:
    """Final state once every identity batch of a run is terminal."""
    if resolved_aggregates >= total_aggregates:
        return S.COMPLETED
    return S.COMPLETED_PARTIAL
