"""PostgreSQL-backed durable job queue."""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import Json

from commitboard.domain.errors import QueueUnavailable
from commitboard.domain.models import (
    NON_TERMINAL_JOB_STATES,
    Job,
    JobKind,
    JobOptions,
    JobState,
)
from commitboard.domain.queue_interface import IJobQueue
from commitboard.infrastructure.postgres_connection import PostgresConnection


logger = logging.getLogger(__name__)

OUTSTANDING = [s.value for s in NON_TERMINAL_JOB_STATES]
# Racing inserts can see the conflicting job finish before they read it back.
ADD_ATTEMPTS = 3


def _job_from_row(row: Dict[str, Any], state: Optional[JobState] = None) -> Job:
    return Job(
        job_id=row["id"],
        kind=JobKind(row["kind"]),
        key=row["job_key"],
        repository_id=row["repository_id"],
        payload=row["payload"] or {},
        state=state or JobState(row["state"]),
        options=JobOptions(
            max_attempts=row["max_attempts"],
            backoff_base_ms=row["backoff_base_ms"],
            remove_on_complete=row["remove_on_complete"],
            remove_on_fail=row["remove_on_fail"],
        ),
        attempts_made=row["attempts_made"],
        run_at=row["run_at"],
        claimed_at=row["claimed_at"],
        failure_reason=row["failure_reason"],
        created_at=row["created_at"],
    )


class PostgresJobQueue(PostgresConnection, IJobQueue):
    """Job queue on a single ``jobs`` table.

    Deduplication relies on a unique index over ``job_key`` restricted to
    non-terminal states, so a key can be reused once its job has finished.
    Claims use ``FOR UPDATE SKIP LOCKED``; concurrent workers never receive
    the same job.
    """

    def __init__(self, connection_string: str):
        try:
            super().__init__(connection_string)
        except psycopg2.OperationalError as e:
            raise QueueUnavailable(f"Job queue backend unavailable: {e}") from e

    @contextmanager
    def _transaction(self):
        try:
            with super()._transaction() as cursor:
                yield cursor
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            raise QueueUnavailable(f"Job queue backend unavailable: {e}") from e

    def add(
        self,
        kind: JobKind,
        key: str,
        repository_id: int,
        payload: Dict[str, Any],
        options: JobOptions
    ) -> Job:
        for _ in range(ADD_ATTEMPTS):
            with self._transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO jobs (
                        kind, job_key, repository_id, payload, state,
                        max_attempts, backoff_base_ms, remove_on_complete, remove_on_fail
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (job_key) WHERE state IN ('waiting', 'active', 'delayed')
                    DO NOTHING
                    RETURNING *
                    """,
                    (
                        kind.value, key, repository_id, Json(payload), JobState.WAITING.value,
                        options.max_attempts, options.backoff_base_ms,
                        options.remove_on_complete, options.remove_on_fail,
                    )
                )
                row = cursor.fetchone()
                if row is None:
                    cursor.execute(
                        "SELECT * FROM jobs WHERE job_key = %s AND state = ANY(%s)",
                        (key, OUTSTANDING)
                    )
                    row = cursor.fetchone()
            if row is not None:
                return _job_from_row(row)
            logger.debug(f"Job {key} finished while being re-added, retrying insert")
        raise QueueUnavailable(f"Could not admit job {key}: key kept changing state")

    def claim(self, kind: JobKind, now: datetime) -> Optional[Job]:
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE jobs
                SET state = 'active',
                    attempts_made = attempts_made + 1,
                    claimed_at = %s,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE kind = %s
                      AND (state = 'waiting' OR (state = 'delayed' AND run_at <= %s))
                    ORDER BY COALESCE(run_at, created_at), id
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (now, kind.value, now)
            )
            row = cursor.fetchone()
            return _job_from_row(row) if row else None

    def mark_completed(self, job_id: int, remove: bool) -> None:
        with self._transaction() as cursor:
            if remove:
                cursor.execute("DELETE FROM jobs WHERE id = %s", (job_id,))
            else:
                cursor.execute(
                    """
                    UPDATE jobs
                    SET state = 'completed', claimed_at = NULL, updated_at = CURRENT_TIMESTAMP
                    WHERE id = %s
                    """,
                    (job_id,)
                )

    def mark_failed(
        self,
        job_id: int,
        reason: str,
        retry_at: Optional[datetime],
        remove: bool
    ) -> Optional[Job]:
        with self._transaction() as cursor:
            if retry_at is not None:
                cursor.execute(
                    """
                    UPDATE jobs
                    SET state = 'delayed', run_at = %s, failure_reason = %s,
                        claimed_at = NULL, updated_at = CURRENT_TIMESTAMP
                    WHERE id = %s
                    RETURNING *
                    """,
                    (retry_at, reason, job_id)
                )
                row = cursor.fetchone()
                return _job_from_row(row) if row else None

            if remove:
                cursor.execute("DELETE FROM jobs WHERE id = %s RETURNING *", (job_id,))
                row = cursor.fetchone()
                return _job_from_row(row, state=JobState.FAILED) if row else None

            cursor.execute(
                """
                UPDATE jobs
                SET state = 'failed', failure_reason = %s,
                    claimed_at = NULL, updated_at = CURRENT_TIMESTAMP
                WHERE id = %s
                RETURNING *
                """,
                (reason, job_id)
            )
            row = cursor.fetchone()
            return _job_from_row(row) if row else None

    def get(self, job_id: int) -> Optional[Job]:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM jobs WHERE id = %s", (job_id,))
            row = cursor.fetchone()
            return _job_from_row(row) if row else None

    def count_outstanding(
        self,
        kind: JobKind,
        repository_id: int,
        exclude_job_id: Optional[int] = None
    ) -> int:
        query = """
            SELECT COUNT(*) AS n FROM jobs
            WHERE kind = %s AND repository_id = %s AND state = ANY(%s)
        """
        params: List[Any] = [kind.value, repository_id, OUTSTANDING]
        if exclude_job_id is not None:
            query += " AND id <> %s"
            params.append(exclude_job_id)
        with self._transaction() as cursor:
            cursor.execute(query, params)
            return cursor.fetchone()["n"]

    def list_stalled(self, claimed_before: datetime) -> List[Job]:
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM jobs
                WHERE state = 'active' AND claimed_at < %s
                ORDER BY claimed_at
                """,
                (claimed_before,)
            )
            return [_job_from_row(row) for row in cursor.fetchall()]

    def counts(self) -> Dict[str, Dict[str, int]]:
        with self._transaction() as cursor:
            cursor.execute("SELECT kind, state, COUNT(*) AS n FROM jobs GROUP BY kind, state")
            result: Dict[str, Dict[str, int]] = {}
            for row in cursor.fetchall():
                result.setdefault(row["kind"], {})[row["state"]] = row["n"]
            return result
