"""Pipeline configuration loaded from environment variables.

Entry scripts call ``load_dotenv`` first, then ``PipelineConfig.from_env()``.
"""
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from commitboard.domain.models import JobOptions
from commitboard.domain.rate_limit import credential_key

MEGABYTE = 1024 * 1024


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable configuration for the ingestion pipeline."""

    # Admission control
    max_repo_size_bytes: int = 250 * MEGABYTE
    max_commit_count: int = 100_000

    # Identity resolution
    identity_batch_size: int = 50
    identity_freshness_window: timedelta = timedelta(hours=24)
    identity_lookup_attempts: int = 3
    rate_limit_safety_threshold: int = 10
    rate_limit_wait_buffer_seconds: float = 5.0

    # Queue
    job_max_attempts: int = 3
    job_backoff_base_ms: int = 60_000
    job_timeout_seconds: float = 600.0

    # Workers
    worker_concurrency: int = 10
    max_jobs_per_execution: int = 50
    poll_interval_seconds: float = 5.0

    # Collaborators
    repo_base_path: str = "/data/repos"
    github_token: Optional[str] = None

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: str = "5432"
    postgres_db: str = "commitboard"
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"

    @property
    def job_options(self) -> JobOptions:
        return JobOptions(
            max_attempts=self.job_max_attempts,
            backoff_base_ms=self.job_backoff_base_ms,
        )

    @property
    def connection_string(self) -> str:
        """PostgreSQL connection string."""
        return (
            f"host={self.postgres_host} port={self.postgres_port} "
            f"dbname={self.postgres_db} user={self.postgres_user} "
            f"password={self.postgres_password}"
        )

    def token_for(self, credential: Optional[str]) -> Optional[str]:
        """Token to use for a job whose payload names ``credential``.

        Job rows only hold ``credential_key`` references, never tokens.
        Workers call out with ``github_token``. A job submitted under another
        credential falls back to it with a warning.
        """
        if credential and (not self.github_token or credential_key(self.github_token) != credential):
            logger.warning(f"Credential {credential} is not configured here, using GITHUB_TOKEN")
        return self.github_token

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build configuration from environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            max_repo_size_bytes=int(os.getenv("MAX_REPO_SIZE_BYTES", defaults.max_repo_size_bytes)),
            max_commit_count=int(os.getenv("MAX_COMMIT_COUNT", defaults.max_commit_count)),
            identity_batch_size=int(os.getenv("IDENTITY_BATCH_SIZE", defaults.identity_batch_size)),
            identity_freshness_window=timedelta(
                hours=float(os.getenv("IDENTITY_FRESHNESS_HOURS", "24"))
            ),
            identity_lookup_attempts=int(
                os.getenv("IDENTITY_LOOKUP_ATTEMPTS", defaults.identity_lookup_attempts)
            ),
            rate_limit_safety_threshold=int(
                os.getenv("RATE_LIMIT_SAFETY_THRESHOLD", defaults.rate_limit_safety_threshold)
            ),
            rate_limit_wait_buffer_seconds=float(
                os.getenv("RATE_LIMIT_WAIT_BUFFER_SECONDS", defaults.rate_limit_wait_buffer_seconds)
            ),
            job_max_attempts=int(os.getenv("JOB_MAX_ATTEMPTS", defaults.job_max_attempts)),
            job_backoff_base_ms=int(os.getenv("JOB_BACKOFF_BASE_MS", defaults.job_backoff_base_ms)),
            job_timeout_seconds=float(os.getenv("JOB_TIMEOUT_SECONDS", defaults.job_timeout_seconds)),
            worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", defaults.worker_concurrency)),
            max_jobs_per_execution=int(
                os.getenv("MAX_JOBS_PER_EXECUTION", defaults.max_jobs_per_execution)
            ),
            poll_interval_seconds=float(
                os.getenv("POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds)
            ),
            repo_base_path=os.getenv("REPO_BASE_PATH", defaults.repo_base_path),
            github_token=os.getenv("GITHUB_TOKEN") or None,
            postgres_host=os.getenv("POSTGRES_HOST", defaults.postgres_host),
            postgres_port=os.getenv("POSTGRES_PORT", defaults.postgres_port),
            postgres_db=os.getenv("POSTGRES_DB", defaults.postgres_db),
            postgres_user=os.getenv("POSTGRES_USER", defaults.postgres_user),
            postgres_password=os.getenv("POSTGRES_PASSWORD", defaults.postgres_password),
        )
