"""Domain models representing core business entities."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional


class RepositoryState(str, Enum):
    """Pipeline status of a repository."""

    PENDING = "pending"
    COMMITS_PROCESSING = "commits_processing"
    USERS_PROCESSING = "users_processing"
    COMPLETED = "completed"
    COMPLETED_PARTIAL = "completed_partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RepositoryState.COMPLETED,
            RepositoryState.COMPLETED_PARTIAL,
            RepositoryState.FAILED,
        )


class ResolutionStatus(str, Enum):
    """Resolution status of a commit aggregate."""

    PENDING = "pending"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"


class JobKind(str, Enum):
    EXTRACTION = "commit_extraction"
    IDENTITY_BATCH = "identity_batch"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


NON_TERMINAL_JOB_STATES = (JobState.WAITING, JobState.ACTIVE, JobState.DELAYED)


@dataclass(frozen=True)
class Repository:
    """Immutable domain entity representing a submitted repository.

    The normalized source URL is the natural identity; ``repo_id`` is the
    surrogate key assigned by storage.
    """
    url: str
    path_name: str
    state: RepositoryState = RepositoryState.PENDING
    size_bytes: Optional[int] = None
    commit_count: Optional[int] = None
    unique_contributors: Optional[int] = None
    failure_reason: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    commits_processed_at: Optional[datetime] = None
    users_processed_at: Optional[datetime] = None
    last_processed_at: Optional[datetime] = None
    repo_id: Optional[int] = None

    @property
    def full_name(self) -> str:
        """Returns the owner/name part of the repository path."""
        return "/".join(self.path_name.split("/")[-2:])


@dataclass(frozen=True)
class CommitRecord:
    """A single commit as seen by the extraction pass."""
    author_email: str
    timestamp: int


@dataclass(frozen=True)
class CommitAggregate:
    """Commit count of one author within one repository."""
    repository_id: int
    author_email: str
    commit_count: int
    status: ResolutionStatus = ResolutionStatus.PENDING


@dataclass(frozen=True)
class Identity:
    """External identity returned by the identity API."""
    username: str
    profile_url: str


@dataclass(frozen=True)
class Contributor:
    """Resolved (or known-unresolvable) identity keyed by author email.

    A contributor without a username records a negative lookup, so the
    email is not looked up again until the record goes stale.
    """
    email: str
    username: Optional[str]
    profile_url: Optional[str]
    updated_at: datetime
    contributor_id: Optional[int] = None

    @property
    def is_resolved(self) -> bool:
        return self.username is not None

    def is_fresh(self, now: datetime, window: timedelta) -> bool:
        return self.updated_at > now - window


@dataclass(frozen=True)
class LeaderboardEntry:
    """One ranked row of a repository leaderboard."""
    email: str
    commit_count: int
    username: Optional[str] = None
    profile_url: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.username or self.email


@dataclass(frozen=True)
class RateLimitState:
    """Remaining call budget for one credential."""
    key: str
    remaining: int
    reset_at: Optional[datetime]
    limit: int


@dataclass(frozen=True)
class JobOptions:
    """Retry and retention policy applied to a job at enqueue time."""
    max_attempts: int = 3
    backoff_base_ms: int = 60_000
    remove_on_complete: bool = True
    remove_on_fail: bool = False

    def delay_for_attempt(self, attempts_made: int) -> timedelta:
        """Exponential backoff delay after the given (1-based) attempt."""
        exponent = max(attempts_made - 1, 0)
        return timedelta(milliseconds=self.backoff_base_ms * (2 ** exponent))


@dataclass(frozen=True)
class Job:
    """A queued unit of work."""
    job_id: int
    kind: JobKind
    key: str
    repository_id: int
    payload: Dict[str, Any]
    state: JobState
    options: JobOptions
    attempts_made: int = 0
    run_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def attempts_left(self) -> int:
        return max(self.options.max_attempts - self.attempts_made, 0)


@dataclass(frozen=True)
class ExtractionResult:
    """Outcome of one commit extraction job."""
    repository_id: int
    total_commits: int
    unique_contributors: int
    batches_enqueued: int
    fresh_clone: bool


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one identity-batch job."""
    repository_id: int
    resolved: int
    unresolved: int
    external_calls: int
    cache_hits: int


@dataclass(frozen=True)
class RunnerMetrics:
    """Metrics for a worker run."""
    jobs_processed: int
    jobs_failed: int
    duration_seconds: float
    errors: Dict[str, int] = field(default_factory=dict)
