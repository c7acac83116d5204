"""Pipeline storage interface (port) for data persistence.

This is the port in hexagonal architecture that the infrastructure layer implements.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from commitboard.domain.models import (
    CommitAggregate,
    Contributor,
    LeaderboardEntry,
    Repository,
    RepositoryState,
    ResolutionStatus,
)


class IPipelineStorage(ABC):
    """Abstract interface for repository, aggregate and contributor storage."""

    @abstractmethod
    def upsert_repository(self, url: str, path_name: str) -> Repository:
        """Return the repository for ``url``, creating it in ``pending`` if new."""
        pass

    @abstractmethod
    def get_repository(self, repository_id: int) -> Optional[Repository]:
        pass

    @abstractmethod
    def get_repository_by_url(self, url: str) -> Optional[Repository]:
        pass

    @abstractmethod
    def list_repositories(self, state: Optional[RepositoryState] = None) -> List[Repository]:
        pass

    @abstractmethod
    def transition_state(
        self,
        repository_id: int,
        expected: Iterable[RepositoryState],
        target: RepositoryState,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Repository]:
        """Atomically move a repository to ``target`` if its state is in ``expected``.

        Args:
            repository_id: Repository to update
            expected: States the repository must currently be in
            target: New state
            fields: Additional repository attributes to set in the same write

        Returns:
            The updated repository, or None if the current state did not match
        """
        pass

    @abstractmethod
    def replace_commit_aggregates(self, repository_id: int, counts: Dict[str, int]) -> None:
        """Bulk-write the aggregates of a fresh extraction run.

        Every written aggregate is reset to ``pending``; authors absent from
        ``counts`` are removed.
        """
        pass

    @abstractmethod
    def get_commit_aggregates(
        self,
        repository_id: int,
        emails: Optional[List[str]] = None
    ) -> List[CommitAggregate]:
        pass

    @abstractmethod
    def set_aggregate_status(
        self,
        repository_id: int,
        emails: List[str],
        status: ResolutionStatus,
        only_pending: bool = False
    ) -> int:
        """Set the resolution status of the given aggregates; returns rows changed."""
        pass

    @abstractmethod
    def count_aggregates(
        self,
        repository_id: int,
        status: Optional[ResolutionStatus] = None
    ) -> int:
        pass

    @abstractmethod
    def get_contributor(self, email: str) -> Optional[Contributor]:
        pass

    @abstractmethod
    def upsert_contributor(
        self,
        email: str,
        username: Optional[str],
        profile_url: Optional[str],
        updated_at: datetime
    ) -> Contributor:
        pass

    @abstractmethod
    def link_contributor(self, repository_id: int, contributor_id: int, commit_count: int) -> None:
        """Upsert the repository-contributor join row."""
        pass

    @abstractmethod
    def get_leaderboard(self, repository_id: int) -> List[LeaderboardEntry]:
        """Ranked rows for a repository, falling back to raw email when unresolved."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close any open connections."""
        pass
