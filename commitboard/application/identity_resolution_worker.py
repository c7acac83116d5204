"""Identity resolution stage: resolves author emails under the shared rate limit."""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from commitboard.application.identity_cache import IdentityCache
from commitboard.application.job_queue_service import JobQueueService
from commitboard.application.rate_limit_coordinator import RateLimitCoordinator
from commitboard.application.repository_lifecycle import RepositoryLifecycle
from commitboard.config import PipelineConfig
from commitboard.domain.errors import ExternalApiNotFound, ExternalApiTransient
from commitboard.domain.identity_interface import IIdentityClient
from commitboard.domain.models import BatchResult, Contributor, Job, JobKind, ResolutionStatus
from commitboard.domain.rate_limit import credential_key
from commitboard.domain.storage_interface import IPipelineStorage
from commitboard.domain.urls import noreply_username


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityResolutionWorker:
    """Processes identity-batch jobs.

    Partial resolution is expected: a missing or unreachable identity leaves
    that one author unresolved and never fails the batch.
    """

    def __init__(
        self,
        storage: IPipelineStorage,
        identity_client: IIdentityClient,
        cache: IdentityCache,
        rate_limiter: RateLimitCoordinator,
        queue: JobQueueService,
        lifecycle: RepositoryLifecycle,
        config: PipelineConfig,
        retry_wait=None,
        clock=utcnow
    ):
        """Initialize the worker.

        Args:
            storage: Aggregate and contributor storage
            identity_client: External identity API
            cache: Two-tier identity cache
            rate_limiter: Shared rate limit coordinator
            queue: Queue service, used for the sibling check on completion
            lifecycle: Repository lifecycle transitions
            config: Pipeline configuration
            retry_wait: tenacity wait strategy between transient retries
            clock: Callable returning the current aware datetime
        """
        self._storage = storage
        self._client = identity_client
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._queue = queue
        self._lifecycle = lifecycle
        self._config = config
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=30)
        self._clock = clock
        self._external_calls = 0

    async def process(self, job: Job) -> BatchResult:
        repository_id = job.repository_id
        emails: List[str] = job.payload["emails"]
        token = self._config.token_for(job.payload.get("credential"))

        aggregates = {
            a.author_email: a
            for a in self._storage.get_commit_aggregates(repository_id, emails)
        }
        logger.info(
            f"Processing {len(aggregates)} contributors for repository {repository_id} "
            f"(job {job.job_id})"
        )

        calls_before = self._external_calls
        hits_before = self._cache.memory_hits + self._cache.durable_hits
        resolved: List[str] = []
        unresolved: List[str] = []

        for email in emails:
            aggregate = aggregates.get(email)
            if aggregate is None:
                # Replaced by a newer extraction run.
                continue

            contributor = await self._resolve(email, token)
            if contributor is not None and contributor.is_resolved:
                self._storage.link_contributor(
                    repository_id, contributor.contributor_id, aggregate.commit_count
                )
                resolved.append(email)
            else:
                unresolved.append(email)

        self._storage.set_aggregate_status(repository_id, resolved, ResolutionStatus.RESOLVED)
        self._storage.set_aggregate_status(repository_id, unresolved, ResolutionStatus.UNRESOLVED)

        logger.info(
            f"Processed {len(resolved) + len(unresolved)} contributors for repository "
            f"{repository_id}: {len(resolved)} resolved, {len(unresolved)} unresolved"
        )
        return BatchResult(
            repository_id=repository_id,
            resolved=len(resolved),
            unresolved=len(unresolved),
            external_calls=self._external_calls - calls_before,
            cache_hits=self._cache.memory_hits + self._cache.durable_hits - hits_before,
        )

    def on_completed(self, job: Job) -> None:
        self._settle(job)

    def on_failed(self, job: Job, error: BaseException) -> None:
        """A batch that will not be retried leaves its remaining authors unresolved."""
        if not job.state.is_terminal:
            return
        self._storage.set_aggregate_status(
            job.repository_id,
            job.payload.get("emails", []),
            ResolutionStatus.UNRESOLVED,
            only_pending=True,
        )
        self._settle(job)

    def _settle(self, job: Job) -> None:
        """Finish the repository once no sibling batch is still outstanding."""
        if self._queue.has_outstanding(JobKind.IDENTITY_BATCH, job.repository_id, job.job_id):
            logger.info(f"Repository {job.repository_id} still has identity batches outstanding")
            return
        self._lifecycle.finish_resolution(job.repository_id)

    async def _resolve(self, email: str, token: Optional[str]) -> Optional[Contributor]:
        cached = self._cache.get(email)
        if cached is not None:
            return cached

        username = noreply_username(email)
        if username is not None:
            return self._remember(email, username, f"https://github.com/{username}")

        if not token:
            logger.warning(f"No credential available to look up {email}")
            return None

        try:
            return await self._lookup(email, token)
        except ExternalApiNotFound:
            logger.info(f"No identity found for {email}")
            return self._remember(email, None, None)
        except ExternalApiTransient as e:
            logger.warning(f"Giving up on {email} after transient errors: {e}")
            return None

    async def _lookup(self, email: str, token: str) -> Contributor:
        key = credential_key(token)
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ExternalApiTransient),
            stop=stop_after_attempt(self._config.identity_lookup_attempts),
            wait=self._retry_wait,
            reraise=True,
        ):
            with attempt:
                await self._rate_limiter.acquire(key)
                self._external_calls += 1
                try:
                    result = await self._client.lookup(email, token)
                except (ExternalApiNotFound, ExternalApiTransient) as e:
                    self._rate_limiter.record(e.rate_limit)
                    raise
                self._rate_limiter.record(result.rate_limit)
                return self._remember(
                    email, result.identity.username, result.identity.profile_url
                )

    def _remember(self, email: str, username: Optional[str], profile_url: Optional[str]) -> Contributor:
        contributor = self._storage.upsert_contributor(email, username, profile_url, self._clock())
        self._cache.put(contributor)
        return contributor
