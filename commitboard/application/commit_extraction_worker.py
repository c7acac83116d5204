"""Commit extraction stage: admission control, history walk and identity fan-out."""
import asyncio
import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional

from commitboard.application.job_queue_service import JobQueueService
from commitboard.application.rate_limit_coordinator import RateLimitCoordinator
from commitboard.application.repository_lifecycle import RepositoryLifecycle
from commitboard.config import PipelineConfig
from commitboard.domain.errors import RepositoryTooLarge, TooManyCommits
from commitboard.domain.identity_interface import IRepositorySizeClient
from commitboard.domain.models import CommitRecord, ExtractionResult, Job, JobKind, Repository
from commitboard.domain.storage_interface import IPipelineStorage
from commitboard.domain.urls import normalize_email
from commitboard.domain.working_copy_interface import IWorkingCopyStorage, WorkingCopy


logger = logging.getLogger(__name__)


def aggregate_commit_counts(commits: Iterable[CommitRecord]) -> Dict[str, int]:
    """Count commits per case-normalized author email in a single pass.

    Commits without an author email are skipped.
    """
    counts: Counter = Counter()
    for commit in commits:
        email = normalize_email(commit.author_email or "")
        if email:
            counts[email] += 1
    return dict(counts)


def partition(emails: List[str], size: int) -> List[List[str]]:
    """Split a sorted author list into fixed-size batches."""
    return [emails[i:i + size] for i in range(0, len(emails), size)]


class CommitExtractionWorker:
    """Processes one extraction job at a time.

    Never calls the identity API: authors are only counted here and handed
    to the identity stage as batch jobs.
    """

    def __init__(
        self,
        storage: IPipelineStorage,
        working_copies: IWorkingCopyStorage,
        size_client: Optional[IRepositorySizeClient],
        queue: JobQueueService,
        lifecycle: RepositoryLifecycle,
        config: PipelineConfig,
        rate_limiter: Optional[RateLimitCoordinator] = None
    ):
        self._storage = storage
        self._working_copies = working_copies
        self._size_client = size_client
        self._queue = queue
        self._lifecycle = lifecycle
        self._config = config
        self._rate_limiter = rate_limiter

    async def process(self, job: Job) -> ExtractionResult:
        """Run the extraction pipeline for the job's repository.

        Any error marks the repository failed and is re-raised so the queue's
        retry policy decides what happens next.
        """
        repository_id = job.repository_id
        token = self._config.token_for(job.payload.get("credential"))

        try:
            repository = self._lifecycle.begin_extraction(repository_id)
            logger.info(
                f"Processing commits for repository {repository.url} "
                f"(ID: {repository_id}, attempt {job.attempts_made})"
            )

            await self._check_reported_size(repository, token)

            copy = await asyncio.to_thread(self._working_copies.materialize, repository, token)
            try:
                size_bytes = await asyncio.to_thread(self._validate_working_copy, copy)
                counts = await asyncio.to_thread(
                    lambda: aggregate_commit_counts(self._working_copies.commit_log(copy))
                )
            finally:
                self._working_copies.release(copy)

            return self._persist_and_fan_out(repository, counts, size_bytes, copy.fresh_clone, job)

        except Exception as e:
            self._lifecycle.fail(repository_id, str(e) or e.__class__.__name__)
            logger.error(f"Failed to process commits for repository {repository_id}: {e}")
            raise

    def on_failed(self, job: Job, error: BaseException) -> None:
        """Timeouts cancel ``process`` before it can record the failure itself."""
        if not job.state.is_terminal:
            return
        repository = self._lifecycle.get(job.repository_id)
        if not repository.state.is_terminal:
            self._lifecycle.fail(job.repository_id, str(error) or error.__class__.__name__)

    async def _check_reported_size(self, repository: Repository, token: Optional[str]) -> None:
        """Reject oversized repositories before anything is cloned.

        Skipped without a credential; an unavailable answer defers the
        decision to the post-materialization check.
        """
        if not token or self._size_client is None:
            logger.info(f"No credential for {repository.url}, size will be checked after clone")
            return

        reported = await self._size_client.reported_size(repository.url, token)
        if self._rate_limiter is not None:
            self._rate_limiter.record(reported.rate_limit)

        if reported.size_bytes is None:
            logger.warning(f"Reported size unavailable for {repository.url}")
            return
        if reported.size_bytes > self._config.max_repo_size_bytes:
            raise RepositoryTooLarge(reported.size_bytes, self._config.max_repo_size_bytes, reported=True)

    def _validate_working_copy(self, copy: WorkingCopy) -> int:
        size_bytes = self._working_copies.size(copy)
        if size_bytes > self._config.max_repo_size_bytes:
            self._working_copies.delete(copy)
            raise RepositoryTooLarge(size_bytes, self._config.max_repo_size_bytes)

        commit_count = self._working_copies.commit_count(copy)
        if commit_count > self._config.max_commit_count:
            self._working_copies.delete(copy)
            raise TooManyCommits(commit_count, self._config.max_commit_count)

        return size_bytes

    def _persist_and_fan_out(
        self,
        repository: Repository,
        counts: Dict[str, int],
        size_bytes: int,
        fresh_clone: bool,
        job: Job
    ) -> ExtractionResult:
        repository_id = repository.repo_id
        total_commits = sum(counts.values())
        self._storage.replace_commit_aggregates(repository_id, counts)
        logger.info(
            f"Found {len(counts)} unique contributors with {total_commits} total commits "
            f"in {repository.url}"
        )

        batches = partition(sorted(counts), self._config.identity_batch_size)
        if not batches:
            self._lifecycle.complete_without_authors(repository_id, total_commits, size_bytes)
            logger.info(f"Repository {repository.url} has no authors, nothing to resolve")
        else:
            for batch in batches:
                self._queue.enqueue_identity_batch(repository_id, batch, job.payload.get("credential"))
            # Only after every batch is durably enqueued.
            self._lifecycle.begin_resolution(repository_id, total_commits, len(counts), size_bytes)
            logger.info(
                f"Enqueued {len(batches)} identity batch job(s) for {len(counts)} authors "
                f"of {repository.url}"
            )
            # Batches finished before users_processing was reached could not settle the run
            if not self._queue.has_outstanding(JobKind.IDENTITY_BATCH, repository_id):
                self._lifecycle.finish_resolution(repository_id)

        return ExtractionResult(
            repository_id=repository_id,
            total_commits=total_commits,
            unique_contributors=len(counts),
            batches_enqueued=len(batches),
            fresh_clone=fresh_clone,
        )
