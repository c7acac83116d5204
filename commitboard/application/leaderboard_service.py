"""Read side: ranked contributor leaderboard for a repository."""
from dataclasses import dataclass
from typing import List, Optional

from commitboard.domain.errors import RepositoryNotFound
from commitboard.domain.models import LeaderboardEntry, Repository
from commitboard.domain.storage_interface import IPipelineStorage
from commitboard.domain.urls import normalize_repo_url


@dataclass(frozen=True)
class Leaderboard:
    repository: Repository
    entries: List[LeaderboardEntry]

    @property
    def failure_reason(self) -> Optional[str]:
        return self.repository.failure_reason


class LeaderboardService:
    """Builds leaderboards; unresolved authors appear under their raw email."""

    def __init__(self, storage: IPipelineStorage):
        self._storage = storage

    def for_url(self, url: str) -> Leaderboard:
        repository = self._storage.get_repository_by_url(normalize_repo_url(url))
        if repository is None:
            raise RepositoryNotFound(f"Repository {url} has not been submitted")
        return Leaderboard(repository, self._storage.get_leaderboard(repository.repo_id))
