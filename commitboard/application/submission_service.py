"""Repository submission and re-submission."""
import logging
from typing import List, Optional, Tuple

from commitboard.application.job_queue_service import JobQueueService
from commitboard.application.repository_lifecycle import RepositoryLifecycle
from commitboard.domain.errors import InvalidRepositoryUrl, QueueUnavailable
from commitboard.domain.models import Job, Repository, RepositoryState
from commitboard.domain.storage_interface import IPipelineStorage
from commitboard.domain.urls import is_valid_github_url, normalize_repo_url, repository_path_name


logger = logging.getLogger(__name__)


class SubmissionService:
    """Entry point of the pipeline: admits repositories into the extraction queue."""

    def __init__(
        self,
        storage: IPipelineStorage,
        lifecycle: RepositoryLifecycle,
        queue: JobQueueService
    ):
        self._storage = storage
        self._lifecycle = lifecycle
        self._queue = queue

    def submit(self, url: str, token: Optional[str] = None) -> Tuple[Repository, Optional[Job]]:
        """Submit a repository URL for processing.

        A repository whose previous run is over re-enters ``pending``. One
        still being extracted gets its existing extraction job back. One
        whose identities are being resolved is left alone.

        Returns:
            The repository and its extraction job (None while identities are
            being resolved)

        Raises:
            InvalidRepositoryUrl: The URL is not a GitHub repository URL
            QueueUnavailable: The repository is recorded but not yet admitted
        """
        if not is_valid_github_url(url):
            raise InvalidRepositoryUrl(f"Not a GitHub repository URL: {url}")

        normalized = normalize_repo_url(url)
        repository = self._lifecycle.submit(normalized, repository_path_name(normalized))

        if repository.state == RepositoryState.USERS_PROCESSING:
            logger.info(f"Repository {normalized} is resolving identities, not re-enqueued")
            return repository, None

        job = self._queue.enqueue_extraction(repository, token)
        logger.info(f"Repository {normalized} admitted with extraction job {job.job_id}")
        return repository, job

    def resubmit(
        self,
        state: RepositoryState = RepositoryState.COMPLETED_PARTIAL,
        token: Optional[str] = None
    ) -> List[Tuple[Repository, Optional[Job]]]:
        """Re-submit every repository currently in ``state``.

        Runs only when an operator triggers it; partial results are never
        retried automatically.
        """
        results = []
        repositories = self._storage.list_repositories(state)
        logger.info(f"Re-submitting {len(repositories)} {state.value} repositories")
        for repository in repositories:
            try:
                results.append(self.submit(repository.url, token))
            except QueueUnavailable as e:
                logger.error(f"Could not re-enqueue {repository.url}: {e}")
                raise
        return results
