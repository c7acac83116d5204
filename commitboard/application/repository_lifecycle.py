"""Persistent transitions of the repository lifecycle state machine."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from commitboard.domain import lifecycle
from commitboard.domain.errors import InvalidStateTransition, RepositoryNotFound
from commitboard.domain.models import Repository, RepositoryState, ResolutionStatus
from commitboard.domain.storage_interface import IPipelineStorage


logger = logging.getLogger(__name__)

S = RepositoryState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RepositoryLifecycle:
    """Authoritative status of each repository's pipeline run.

    Every transition is a compare-and-set against the states the transition
    table allows as sources, so two workers racing on the same repository
    cannot both apply conflicting moves.
    """

    def __init__(self, storage: IPipelineStorage, clock=utcnow):
        self._storage = storage
        self._clock = clock

    def get(self, repository_id: int) -> Repository:
        repository = self._storage.get_repository(repository_id)
        if repository is None:
            raise RepositoryNotFound(f"Repository {repository_id} not found")
        return repository

    def submit(self, url: str, path_name: str) -> Repository:
        """Create the repository, or re-enter ``pending`` if its last run is over."""
        repository = self._storage.upsert_repository(url, path_name)
        if repository.state.is_terminal:
            repository = self._move(
                repository.repo_id,
                S.PENDING,
                {"failure_reason": None},
                expected=[repository.state],
            )
            logger.info(f"Repository {url} re-entered pending for a refresh")
        return repository

    def begin_extraction(self, repository_id: int) -> Repository:
        return self._move(
            repository_id,
            S.COMMITS_PROCESSING,
            {"last_attempt_at": self._clock(), "failure_reason": None},
        )

    def begin_resolution(
        self,
        repository_id: int,
        total_commits: int,
        unique_contributors: int,
        size_bytes: Optional[int] = None
    ) -> Repository:
        return self._move(
            repository_id,
            S.USERS_PROCESSING,
            {
                "commit_count": total_commits,
                "unique_contributors": unique_contributors,
                "size_bytes": size_bytes,
                "commits_processed_at": self._clock(),
            },
        )

    def complete_without_authors(
        self,
        repository_id: int,
        total_commits: int,
        size_bytes: Optional[int] = None
    ) -> Repository:
        now = self._clock()
        return self._move(
            repository_id,
            S.COMPLETED,
            {
                "commit_count": total_commits,
                "unique_contributors": 0,
                "size_bytes": size_bytes,
                "commits_processed_at": now,
                "users_processed_at": now,
                "last_processed_at": now,
            },
            expected=[S.COMMITS_PROCESSING],
        )

    def fail(self, repository_id: int, reason: str) -> Optional[Repository]:
        """Mark an extraction run failed; a no-op if the repository moved on meanwhile."""
        repository = self._storage.transition_state(
            repository_id,
            lifecycle.sources_for(S.FAILED),
            S.FAILED,
            {"failure_reason": reason},
        )
        if repository is None:
            logger.warning(f"Repository {repository_id} could not be marked failed: state changed")
        else:
            logger.error(f"Repository {repository_id} failed: {reason}")
        return repository

    def finish_resolution(self, repository_id: int) -> Optional[Repository]:
        """Settle a run whose identity batches are all terminal.

        Aggregates still pending at this point belong to batches that never
        finished and are counted as unresolved.

        Returns:
            The repository in ``completed`` / ``completed_partial``, or None
            if another worker already settled it
        """
        if self.get(repository_id).state != S.USERS_PROCESSING:
            logger.debug(f"Repository {repository_id} is not resolving identities, nothing to settle")
            return None

        pending = self._storage.get_commit_aggregates(repository_id)
        leftover = [a.author_email for a in pending if a.status == ResolutionStatus.PENDING]
        if leftover:
            self._storage.set_aggregate_status(
                repository_id, leftover, ResolutionStatus.UNRESOLVED, only_pending=True
            )

        total = self._storage.count_aggregates(repository_id)
        resolved = self._storage.count_aggregates(repository_id, ResolutionStatus.RESOLVED)
        target = lifecycle.resolution_outcome(total, resolved)
        now = self._clock()

        repository = self._storage.transition_state(
            repository_id,
            [S.USERS_PROCESSING],
            target,
            {"users_processed_at": now, "last_processed_at": now},
        )
        if repository is not None:
            logger.info(
                f"Repository {repository_id} is {target.value}: {resolved}/{total} authors resolved"
            )
        return repository

    def _move(
        self,
        repository_id: int,
        target: RepositoryState,
        fields: Dict[str, Any],
        expected: Optional[Iterable[RepositoryState]] = None
    ) -> Repository:
        sources = list(expected) if expected is not None else list(lifecycle.sources_for(target))
        repository = self._storage.transition_state(repository_id, sources, target, fields)
        if repository is None:
            current = self.get(repository_id)
            lifecycle.ensure_transition(current.state, target)
            raise InvalidStateTransition(
                f"Repository {repository_id} changed state concurrently (now {current.state.value})"
            )
        return repository
