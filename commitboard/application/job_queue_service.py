"""Job admission with per-entity deduplication and an explicit retry policy."""
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from commitboard.domain.models import Job, JobKind, JobOptions, JobState, Repository
from commitboard.domain.queue_interface import IJobQueue
from commitboard.domain.rate_limit import credential_key


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def batch_hash(emails: Iterable[str]) -> str:
    """Stable hash of an author set; member order does not matter."""
    members = "\n".join(sorted(set(emails)))
    return hashlib.sha256(members.encode("utf-8")).hexdigest()[:16]


def extraction_job_key(repository_id: int) -> str:
    return f"{JobKind.EXTRACTION.value}:{repository_id}"


def identity_batch_job_key(repository_id: int, emails: Iterable[str]) -> str:
    return f"{JobKind.IDENTITY_BATCH.value}:{repository_id}:{batch_hash(emails)}"


class JobQueueService:
    """Application service in front of the queue backend.

    Derives deterministic job keys so a non-terminal job is never
    duplicated, and owns the retry policy: a retryable failure with attempts
    left is delayed by ``base * 2 ** (attempt - 1)``, anything else fails
    terminally.
    """

    def __init__(
        self,
        backend: IJobQueue,
        default_options: Optional[JobOptions] = None,
        clock=utcnow
    ):
        """Initialize the service.

        Args:
            backend: Durable queue implementation
            default_options: Options applied when enqueue is called without any
            clock: Callable returning the current aware datetime
        """
        self._backend = backend
        self._default_options = default_options or JobOptions()
        self._clock = clock

    def enqueue(
        self,
        kind: JobKind,
        key: str,
        repository_id: int,
        payload: Dict[str, Any],
        options: Optional[JobOptions] = None
    ) -> Job:
        """Admit a job, or return the existing non-terminal job with the same key.

        Raises:
            QueueUnavailable: The backend could not be reached; the step is
                not admitted and may be retried by the caller
        """
        job = self._backend.add(kind, key, repository_id, payload, options or self._default_options)
        logger.info(f"Job {job.job_id} ({key}) is {job.state.value}")
        return job

    def enqueue_extraction(self, repository: Repository, token: Optional[str] = None) -> Job:
        """Enqueue extraction; the payload keeps a reference to ``token``, not the token."""
        payload = {
            "url": repository.url,
            "path_name": repository.path_name,
            "credential": credential_key(token) if token else None,
        }
        return self.enqueue(
            JobKind.EXTRACTION,
            extraction_job_key(repository.repo_id),
            repository.repo_id,
            payload,
        )

    def enqueue_identity_batch(
        self,
        repository_id: int,
        emails: List[str],
        credential: Optional[str] = None
    ) -> Job:
        members = sorted(set(emails))
        payload = {"emails": members, "credential": credential, "batch_hash": batch_hash(members)}
        return self.enqueue(
            JobKind.IDENTITY_BATCH,
            identity_batch_job_key(repository_id, members),
            repository_id,
            payload,
        )

    def claim(self, kind: JobKind) -> Optional[Job]:
        return self._backend.claim(kind, self._clock())

    def complete(self, job: Job) -> None:
        self._backend.mark_completed(job.job_id, remove=job.options.remove_on_complete)
        logger.info(f"Job {job.job_id} completed")

    def retry_at(self, job: Job, retryable: bool = True) -> Optional[datetime]:
        """When the failed attempt should run again, or None for a terminal failure."""
        if not retryable or job.attempts_made >= job.options.max_attempts:
            return None
        return self._clock() + job.options.delay_for_attempt(job.attempts_made)

    def fail(self, job: Job, error: BaseException, retryable: bool = True) -> Job:
        """Record a failed attempt and apply the retry policy.

        Returns:
            The job as recorded after the failure (delayed or failed)
        """
        reason = str(error) or error.__class__.__name__
        retry_at = self.retry_at(job, retryable)
        remove = retry_at is None and job.options.remove_on_fail
        updated = self._backend.mark_failed(job.job_id, reason, retry_at, remove)

        if retry_at is None:
            logger.error(
                f"Job {job.job_id} failed terminally after {job.attempts_made} attempt(s): {reason}"
            )
        else:
            logger.warning(
                f"Job {job.job_id} failed attempt {job.attempts_made}/{job.options.max_attempts}, "
                f"retrying at {retry_at.isoformat()}: {reason}"
            )

        if updated is not None:
            return updated
        state = JobState.FAILED if retry_at is None else JobState.DELAYED
        return Job(
            job_id=job.job_id,
            kind=job.kind,
            key=job.key,
            repository_id=job.repository_id,
            payload=job.payload,
            state=state,
            options=job.options,
            attempts_made=job.attempts_made,
            run_at=retry_at,
            failure_reason=reason,
            created_at=job.created_at,
        )

    def has_outstanding(
        self,
        kind: JobKind,
        repository_id: int,
        exclude_job_id: Optional[int] = None
    ) -> bool:
        return self._backend.count_outstanding(kind, repository_id, exclude_job_id) > 0

    def recover_stalled(self, older_than: timedelta) -> List[Job]:
        """Treat jobs left active by a dead worker as failed attempts."""
        cutoff = self._clock() - older_than
        recovered = []
        for job in self._backend.list_stalled(cutoff):
            logger.warning(f"Job {job.job_id} stalled since {job.claimed_at}, failing the attempt")
            recovered.append(self.fail(job, RuntimeError("Job stalled: worker stopped responding")))
        return recovered

    def get(self, job_id: int) -> Optional[Job]:
        return self._backend.get(job_id)

    def counts(self) -> Dict[str, Dict[str, int]]:
        return self._backend.counts()

    def close(self) -> None:
        self._backend.close()
