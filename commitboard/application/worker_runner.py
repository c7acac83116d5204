"""Worker runner pulling jobs of one kind from the queue."""
import asyncio
import logging
import time
from collections import Counter
from datetime import timedelta
from typing import Optional

from commitboard.application.job_queue_service import JobQueueService
from commitboard.domain.errors import JobTimeout
from commitboard.domain.models import Job, JobKind, RunnerMetrics


logger = logging.getLogger(__name__)


class WorkerRunner:
    """Claims jobs of one kind and hands them to a worker.

    The worker object provides ``async process(job)`` and may provide
    ``on_completed(job)`` / ``on_failed(job, error)`` hooks, which run after
    the queue has recorded the outcome. A job exceeding ``job_timeout_seconds``
    is failed like any other error and retried per the queue policy.
    """

    def __init__(
        self,
        queue: JobQueueService,
        kind: JobKind,
        worker,
        concurrency: int = 1,
        job_timeout_seconds: float = 600.0,
        poll_interval_seconds: float = 5.0
    ):
        self._queue = queue
        self._kind = kind
        self._worker = worker
        self._concurrency = max(concurrency, 1)
        self._timeout = job_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._processed = 0
        self._failed = 0
        self._errors: Counter = Counter()

    async def run_once(self) -> bool:
        """Claim and execute one job. Returns False when nothing was claimable."""
        job = self._queue.claim(self._kind)
        if job is None:
            return False
        await self._execute(job)
        return True

    async def drain(self, max_jobs: Optional[int] = None) -> RunnerMetrics:
        """Process jobs with bounded concurrency until the queue is empty.

        Args:
            max_jobs: Stop after this many claims (all consumers combined)

        Returns:
            RunnerMetrics for this drain
        """
        start_time = time.time()
        processed_before, failed_before = self._processed, self._failed
        budget = {"claims": 0}

        async def consume() -> None:
            while max_jobs is None or budget["claims"] < max_jobs:
                budget["claims"] += 1
                if not await self.run_once():
                    budget["claims"] -= 1
                    return

        self._queue.recover_stalled(timedelta(seconds=self._timeout * 2))
        await asyncio.gather(*(consume() for _ in range(self._concurrency)))

        metrics = RunnerMetrics(
            jobs_processed=self._processed - processed_before,
            jobs_failed=self._failed - failed_before,
            duration_seconds=time.time() - start_time,
            errors=dict(self._errors),
        )
        logger.info(
            f"{self._kind.value} runner drained: {metrics.jobs_processed} processed, "
            f"{metrics.jobs_failed} failed in {metrics.duration_seconds:.2f} seconds"
        )
        return metrics

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Drain, then poll until ``stop`` is set."""
        while not stop.is_set():
            await self.drain()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _execute(self, job: Job) -> None:
        logger.info(
            f"Starting job {job.job_id} ({job.kind.value}) for repository {job.repository_id}, "
            f"attempt {job.attempts_made}/{job.options.max_attempts}"
        )
        try:
            await asyncio.wait_for(self._worker.process(job), timeout=self._timeout)
        except asyncio.TimeoutError:
            self._record_failure(job, JobTimeout(job.job_id, self._timeout))
        except Exception as e:
            self._record_failure(job, e)
        else:
            self._queue.complete(job)
            self._processed += 1
            hook = getattr(self._worker, "on_completed", None)
            if hook is not None:
                hook(job)

    def _record_failure(self, job: Job, error: BaseException) -> None:
        self._failed += 1
        self._errors[error.__class__.__name__] += 1
        failed = self._queue.fail(job, error, retryable=getattr(error, "retryable", True))
        hook = getattr(self._worker, "on_failed", None)
        if hook is not None:
            hook(failed, error)
