"""Job queue backend interface (port)."""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from commitboard.domain.models import Job, JobKind, JobOptions


class IJobQueue(ABC):
    """Abstract interface for a durable job queue with per-key deduplication.

    Implementations raise QueueUnavailable when the backend cannot be reached.
    """

    @abstractmethod
    def add(
        self,
        kind: JobKind,
        key: str,
        repository_id: int,
        payload: Dict[str, Any],
        options: JobOptions
    ) -> Job:
        """Insert a waiting job unless a non-terminal job with ``key`` exists.

        Returns:
            The new job, or the existing non-terminal job with the same key
        """
        pass

    @abstractmethod
    def claim(self, kind: JobKind, now: datetime) -> Optional[Job]:
        """Atomically activate the oldest eligible job of ``kind``.

        Eligible jobs are waiting, or delayed with ``run_at <= now``. The
        attempt counter is incremented. No two callers receive the same job.
        """
        pass

    @abstractmethod
    def mark_completed(self, job_id: int, remove: bool) -> None:
        pass

    @abstractmethod
    def mark_failed(
        self,
        job_id: int,
        reason: str,
        retry_at: Optional[datetime],
        remove: bool
    ) -> Optional[Job]:
        """Record a failed attempt.

        A ``retry_at`` moves the job to delayed; None fails it terminally
        (and deletes it when ``remove`` is set).
        """
        pass

    @abstractmethod
    def get(self, job_id: int) -> Optional[Job]:
        pass

    @abstractmethod
    def count_outstanding(
        self,
        kind: JobKind,
        repository_id: int,
        exclude_job_id: Optional[int] = None
    ) -> int:
        """Number of non-terminal jobs of ``kind`` for a repository."""
        pass

    @abstractmethod
    def list_stalled(self, claimed_before: datetime) -> List[Job]:
        """Active jobs claimed before the cutoff (their worker is presumed dead)."""
        pass

    @abstractmethod
    def counts(self) -> Dict[str, Dict[str, int]]:
        """Job counts per kind and state."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass
