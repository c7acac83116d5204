"""Database initialization script.

Creates the schema for repositories, commit aggregates, contributors, the
job queue and the shared rate limit state.
"""
import sys
import psycopg2
import logging
from dotenv import load_dotenv

from commitboard.config import PipelineConfig

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def create_schema(conn) -> None:
    """Create database schema.

    Schema design considerations:
    - repositories is keyed by its normalized URL; state holds the lifecycle status
    - commit_aggregates has one row per (repository, author email), rewritten in place
      by every extraction run
    - contributors caches identity lookups per email; a NULL username records a
      lookup that found nobody
    - jobs is the durable queue; the partial unique index on job_key only covers
      non-terminal states, so a key can be reused once its job is over
    - rate_limits holds one row per credential, updated under row locks
    """
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS repositories (
                id SERIAL PRIMARY KEY,
                url TEXT NOT NULL UNIQUE,
                path_name TEXT NOT NULL,
                state VARCHAR(32) NOT NULL DEFAULT 'pending',
                size_bytes BIGINT,
                commit_count INTEGER,
                unique_contributors INTEGER,
                failure_reason TEXT,
                last_attempt_at TIMESTAMPTZ,
                commits_processed_at TIMESTAMPTZ,
                users_processed_at TIMESTAMPTZ,
                last_processed_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_repositories_state
            ON repositories(state)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS commit_aggregates (
                id SERIAL PRIMARY KEY,
                repository_id INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
                author_email TEXT NOT NULL,
                commit_count INTEGER NOT NULL,
                status VARCHAR(16) NOT NULL DEFAULT 'pending',
                updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                CONSTRAINT commit_aggregates_repo_email_unique UNIQUE (repository_id, author_email)
            )
        """)

        # Leaderboard ordering
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_commit_aggregates_ranking
            ON commit_aggregates(repository_id, commit_count DESC)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS contributors (
                id SERIAL PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                username VARCHAR(255),
                profile_url TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS repository_contributors (
                repository_id INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
                contributor_id INTEGER NOT NULL REFERENCES contributors(id) ON DELETE CASCADE,
                commit_count INTEGER NOT NULL,
                PRIMARY KEY (repository_id, contributor_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id BIGSERIAL PRIMARY KEY,
                kind VARCHAR(32) NOT NULL,
                job_key TEXT NOT NULL,
                repository_id INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
                payload JSONB NOT NULL DEFAULT '{}'::jsonb,
                state VARCHAR(16) NOT NULL DEFAULT 'waiting',
                max_attempts INTEGER NOT NULL DEFAULT 3,
                backoff_base_ms INTEGER NOT NULL DEFAULT 60000,
                remove_on_complete BOOLEAN NOT NULL DEFAULT TRUE,
                remove_on_fail BOOLEAN NOT NULL DEFAULT FALSE,
                attempts_made INTEGER NOT NULL DEFAULT 0,
                run_at TIMESTAMPTZ,
                claimed_at TIMESTAMPTZ,
                failure_reason TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # At most one non-terminal job per key
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_outstanding_key
            ON jobs(job_key)
            WHERE state IN ('waiting', 'active', 'delayed')
        """)

        # Claim order
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_claimable
            ON jobs(kind, state, run_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_repository
            ON jobs(repository_id, kind)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS rate_limits (
                key VARCHAR(64) PRIMARY KEY,
                remaining INTEGER NOT NULL,
                reset_at TIMESTAMPTZ,
                limit_total INTEGER NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        conn.commit()
        logger.info("Database schema created successfully")

    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating schema: {e}")
        raise
    finally:
        cursor.close()


def main():
    """Initialize the database."""
    try:
        config = PipelineConfig.from_env()
        logger.info("Connecting to database...")

        conn = psycopg2.connect(config.connection_string)
        conn.autocommit = False

        create_schema(conn)

        conn.close()
        logger.info("Database initialization completed successfully")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
