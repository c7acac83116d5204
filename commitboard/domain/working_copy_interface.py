"""Working copy storage interface (port).

The pipeline only needs to fetch a working copy, read its history and
release it; where the copy lives is up to the implementation.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from commitboard.domain.models import CommitRecord, Repository


@dataclass(frozen=True)
class WorkingCopy:
    """Handle to a materialized working copy."""
    repository: Repository
    local_path: Path
    fresh_clone: bool


class IWorkingCopyStorage(ABC):
    """Abstract interface for materializing repository working copies."""

    @abstractmethod
    def materialize(self, repository: Repository, token: Optional[str] = None) -> WorkingCopy:
        """Clone the repository, or fetch updates into an existing copy.

        Raises:
            MaterializationFailed: The clone or fetch failed
        """
        pass

    @abstractmethod
    def size(self, copy: WorkingCopy) -> int:
        """On-disk size in bytes."""
        pass

    @abstractmethod
    def commit_count(self, copy: WorkingCopy) -> int:
        pass

    @abstractmethod
    def commit_log(self, copy: WorkingCopy) -> Iterator[CommitRecord]:
        """Lazily yield every commit, newest first."""
        pass

    @abstractmethod
    def release(self, copy: WorkingCopy) -> None:
        """Hand the copy back once the pipeline is done reading it."""
        pass

    @abstractmethod
    def delete(self, copy: WorkingCopy) -> None:
        pass
