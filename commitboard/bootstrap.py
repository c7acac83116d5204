"""Wiring of the PostgreSQL, git and GitHub adapters into the application services."""
import logging
from dataclasses import dataclass
from typing import Optional

from commitboard.application.commit_extraction_worker import CommitExtractionWorker
from commitboard.application.identity_cache import IdentityCache
from commitboard.application.identity_resolution_worker import IdentityResolutionWorker
from commitboard.application.job_queue_service import JobQueueService
from commitboard.application.leaderboard_service import LeaderboardService
from commitboard.application.rate_limit_coordinator import RateLimitCoordinator
from commitboard.application.repository_lifecycle import RepositoryLifecycle
from commitboard.application.submission_service import SubmissionService
from commitboard.config import PipelineConfig
from commitboard.infrastructure.github_client import GitHubGraphQLClient
from commitboard.infrastructure.git_working_copy import GitWorkingCopyStorage
from commitboard.infrastructure.postgres_job_queue import PostgresJobQueue
from commitboard.infrastructure.postgres_rate_limit_store import PostgresRateLimitStore
from commitboard.infrastructure.postgres_storage import PostgresPipelineStorage


logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """Application services sharing one set of adapters."""
    config: PipelineConfig
    storage: PostgresPipelineStorage
    queue: JobQueueService
    rate_limit_store: PostgresRateLimitStore
    lifecycle: RepositoryLifecycle
    submissions: SubmissionService
    leaderboards: LeaderboardService
    github_client: Optional[GitHubGraphQLClient] = None

    def extraction_worker(self) -> CommitExtractionWorker:
        return CommitExtractionWorker(
            storage=self.storage,
            working_copies=GitWorkingCopyStorage(self.config.repo_base_path),
            size_client=self._github(),
            queue=self.queue,
            lifecycle=self.lifecycle,
            config=self.config,
            rate_limiter=self.rate_limiter(),
        )

    def identity_worker(self) -> IdentityResolutionWorker:
        return IdentityResolutionWorker(
            storage=self.storage,
            identity_client=self._github(),
            cache=IdentityCache(self.storage, self.config.identity_freshness_window),
            rate_limiter=self.rate_limiter(),
            queue=self.queue,
            lifecycle=self.lifecycle,
            config=self.config,
        )

    def rate_limiter(self) -> RateLimitCoordinator:
        return RateLimitCoordinator(
            self.rate_limit_store,
            safety_threshold=self.config.rate_limit_safety_threshold,
            wait_buffer_seconds=self.config.rate_limit_wait_buffer_seconds,
        )

    def _github(self) -> GitHubGraphQLClient:
        if self.github_client is None:
            self.github_client = GitHubGraphQLClient()
        return self.github_client

    async def close(self) -> None:
        """Close connections."""
        if self.github_client is not None:
            await self.github_client.close()
        self.queue.close()
        self.rate_limit_store.close()
        self.storage.close()


def build_pipeline(config: PipelineConfig) -> Pipeline:
    """Connect every adapter named by ``config``."""
    storage = PostgresPipelineStorage(config.connection_string)
    queue = JobQueueService(PostgresJobQueue(config.connection_string), config.job_options)
    lifecycle = RepositoryLifecycle(storage)
    logger.info("Pipeline adapters initialized")
    return Pipeline(
        config=config,
        storage=storage,
        queue=queue,
        rate_limit_store=PostgresRateLimitStore(config.connection_string),
        lifecycle=lifecycle,
        submissions=SubmissionService(storage, lifecycle, queue),
        leaderboards=LeaderboardService(storage),
    )
