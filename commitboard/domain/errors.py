"""Pipeline error taxonomy.

Every error carries a ``retryable`` flag. The worker runner reads it to
decide between the queue's retry/backoff policy and immediate terminal
failure.
"""
from typing import Optional

from commitboard.domain.models import RateLimitState


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    retryable = True


class RepositoryTooLarge(PipelineError):
    """Repository exceeds the configured size limit."""
    retryable = False

    def __init__(self, size_bytes: int, limit_bytes: int, reported: bool = False):
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        self.reported = reported
        source = "reported" if reported else "on-disk"
        super().__init__(
            f"Repository {source} size {size_bytes} bytes exceeds limit of {limit_bytes} bytes"
        )


class TooManyCommits(PipelineError):
    """Repository history exceeds the configured commit limit."""
    retryable = False

    def __init__(self, commit_count: int, limit: int):
        self.commit_count = commit_count
        self.limit = limit
        super().__init__(
            f"Repository has {commit_count} commits, limit is {limit}"
        )


class QueueUnavailable(PipelineError):
    """The job queue backend could not be reached."""


class MaterializationFailed(PipelineError):
    """A working copy could not be cloned or updated."""


class ExternalApiError(PipelineError):
    """Base for identity API errors; carries the response rate limit metadata."""

    def __init__(self, message: str, rate_limit: Optional[RateLimitState] = None):
        super().__init__(message)
        self.rate_limit = rate_limit


class ExternalApiTransient(ExternalApiError):
    """Retryable identity API failure (network, 5xx, secondary rate limit)."""


class ExternalApiNotFound(ExternalApiError):
    """The identity API has no user for the given email."""
    retryable = False


class InvalidRepositoryUrl(PipelineError):
    retryable = False


class RepositoryNotFound(PipelineError):
    retryable = False


class InvalidStateTransition(PipelineError):
    retryable = False


class JobTimeout(PipelineError):
    """A job exceeded its attempt time budget."""

    def __init__(self, job_id: int, timeout_seconds: float):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job {job_id} exceeded its time budget of {timeout_seconds:.0f} seconds")
