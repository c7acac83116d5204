"""PostgreSQL implementation of pipeline storage."""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg2.extras import execute_values

from commitboard.domain.models import (
    CommitAggregate,
    Contributor,
    LeaderboardEntry,
    Repository,
    RepositoryState,
    ResolutionStatus,
)
from commitboard.domain.storage_interface import IPipelineStorage
from commitboard.infrastructure.postgres_connection import PostgresConnection


logger = logging.getLogger(__name__)

# Columns a state transition may set alongside the state itself.
REPOSITORY_FIELDS = frozenset({
    "size_bytes",
    "commit_count",
    "unique_contributors",
    "failure_reason",
    "last_attempt_at",
    "commits_processed_at",
    "users_processed_at",
    "last_processed_at",
})


def _repository_from_row(row: Dict[str, Any]) -> Repository:
    return Repository(
        url=row["url"],
        path_name=row["path_name"],
        state=RepositoryState(row["state"]),
        size_bytes=row["size_bytes"],
        commit_count=row["commit_count"],
        unique_contributors=row["unique_contributors"],
        failure_reason=row["failure_reason"],
        last_attempt_at=row["last_attempt_at"],
        commits_processed_at=row["commits_processed_at"],
        users_processed_at=row["users_processed_at"],
        last_processed_at=row["last_processed_at"],
        repo_id=row["id"],
    )


def _contributor_from_row(row: Dict[str, Any]) -> Contributor:
    return Contributor(
        email=row["email"],
        username=row["username"],
        profile_url=row["profile_url"],
        updated_at=row["updated_at"],
        contributor_id=row["id"],
    )


class PostgresPipelineStorage(PostgresConnection, IPipelineStorage):
    """PostgreSQL implementation of pipeline storage.

    Aggregates are written with ``execute_values`` upserts, so re-running an
    extraction rewrites the same rows instead of adding new ones. State
    transitions are single conditional UPDATEs.
    """

    def upsert_repository(self, url: str, path_name: str) -> Repository:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO repositories (url, path_name)
                VALUES (%s, %s)
                ON CONFLICT (url) DO UPDATE SET path_name = EXCLUDED.path_name
                RETURNING *
                """,
                (url, path_name)
            )
            return _repository_from_row(cursor.fetchone())

    def get_repository(self, repository_id: int) -> Optional[Repository]:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM repositories WHERE id = %s", (repository_id,))
            row = cursor.fetchone()
            return _repository_from_row(row) if row else None

    def get_repository_by_url(self, url: str) -> Optional[Repository]:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM repositories WHERE url = %s", (url,))
            row = cursor.fetchone()
            return _repository_from_row(row) if row else None

    def list_repositories(self, state: Optional[RepositoryState] = None) -> List[Repository]:
        with self._transaction() as cursor:
            if state is None:
                cursor.execute("SELECT * FROM repositories ORDER BY id")
            else:
                cursor.execute(
                    "SELECT * FROM repositories WHERE state = %s ORDER BY id", (state.value,)
                )
            return [_repository_from_row(row) for row in cursor.fetchall()]

    def transition_state(
        self,
        repository_id: int,
        expected: Iterable[RepositoryState],
        target: RepositoryState,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Repository]:
        fields = fields or {}
        unknown = set(fields) - REPOSITORY_FIELDS
        if unknown:
            raise ValueError(f"Unknown repository fields: {sorted(unknown)}")

        assignments = ["state = %s", "updated_at = CURRENT_TIMESTAMP"]
        params: List[Any] = [target.value]
        for column, value in fields.items():
            assignments.append(f"{column} = %s")
            params.append(value)
        params.extend([repository_id, [s.value for s in expected]])

        with self._transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE repositories
                SET {", ".join(assignments)}
                WHERE id = %s AND state = ANY(%s)
                RETURNING *
                """,
                params
            )
            row = cursor.fetchone()
            return _repository_from_row(row) if row else None

    def replace_commit_aggregates(self, repository_id: int, counts: Dict[str, int]) -> None:
        emails = sorted(counts)
        with self._transaction() as cursor:
            # Authors that disappeared from history since the last run
            cursor.execute(
                """
                DELETE FROM commit_aggregates
                WHERE repository_id = %s AND NOT (author_email = ANY(%s))
                """,
                (repository_id, emails)
            )
            cursor.execute(
                """
                DELETE FROM repository_contributors rc
                USING contributors c
                WHERE rc.contributor_id = c.id
                  AND rc.repository_id = %s
                  AND NOT (c.email = ANY(%s))
                """,
                (repository_id, emails)
            )
            if emails:
                execute_values(
                    cursor,
                    """
                    INSERT INTO commit_aggregates (repository_id, author_email, commit_count, status)
                    VALUES %s
                    ON CONFLICT (repository_id, author_email)
                    DO UPDATE SET
                        commit_count = EXCLUDED.commit_count,
                        status = EXCLUDED.status,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    [(repository_id, email, counts[email], ResolutionStatus.PENDING.value) for email in emails],
                    page_size=1000
                )
        logger.info(f"Saved {len(emails)} commit aggregates for repository {repository_id}")

    def get_commit_aggregates(
        self,
        repository_id: int,
        emails: Optional[List[str]] = None
    ) -> List[CommitAggregate]:
        with self._transaction() as cursor:
            if emails is None:
                cursor.execute(
                    """
                    SELECT repository_id, author_email, commit_count, status
                    FROM commit_aggregates
                    WHERE repository_id = %s
                    ORDER BY author_email
                    """,
                    (repository_id,)
                )
            else:
                cursor.execute(
                    """
                    SELECT repository_id, author_email, commit_count, status
                    FROM commit_aggregates
                    WHERE repository_id = %s AND author_email = ANY(%s)
                    ORDER BY author_email
                    """,
                    (repository_id, list(emails))
                )
            return [
                CommitAggregate(
                    repository_id=row["repository_id"],
                    author_email=row["author_email"],
                    commit_count=row["commit_count"],
                    status=ResolutionStatus(row["status"]),
                )
                for row in cursor.fetchall()
            ]

    def set_aggregate_status(
        self,
        repository_id: int,
        emails: List[str],
        status: ResolutionStatus,
        only_pending: bool = False
    ) -> int:
        if not emails:
            return 0
        query = """
            UPDATE commit_aggregates
            SET status = %s, updated_at = CURRENT_TIMESTAMP
            WHERE repository_id = %s AND author_email = ANY(%s)
        """
        params: List[Any] = [status.value, repository_id, list(emails)]
        if only_pending:
            query += " AND status = %s"
            params.append(ResolutionStatus.PENDING.value)
        with self._transaction() as cursor:
            cursor.execute(query, params)
            return cursor.rowcount

    def count_aggregates(
        self,
        repository_id: int,
        status: Optional[ResolutionStatus] = None
    ) -> int:
        with self._transaction() as cursor:
            if status is None:
                cursor.execute(
                    "SELECT COUNT(*) AS n FROM commit_aggregates WHERE repository_id = %s",
                    (repository_id,)
                )
            else:
                cursor.execute(
                    "SELECT COUNT(*) AS n FROM commit_aggregates WHERE repository_id = %s AND status = %s",
                    (repository_id, status.value)
                )
            return cursor.fetchone()["n"]

    def get_contributor(self, email: str) -> Optional[Contributor]:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM contributors WHERE email = %s", (email,))
            row = cursor.fetchone()
            return _contributor_from_row(row) if row else None

    def upsert_contributor(
        self,
        email: str,
        username: Optional[str],
        profile_url: Optional[str],
        updated_at: datetime
    ) -> Contributor:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO contributors (email, username, profile_url, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE SET
                    username = EXCLUDED.username,
                    profile_url = EXCLUDED.profile_url,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (email, username, profile_url, updated_at)
            )
            return _contributor_from_row(cursor.fetchone())

    def link_contributor(self, repository_id: int, contributor_id: int, commit_count: int) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO repository_contributors (repository_id, contributor_id, commit_count)
                VALUES (%s, %s, %s)
                ON CONFLICT (repository_id, contributor_id)
                DO UPDATE SET commit_count = EXCLUDED.commit_count
                """,
                (repository_id, contributor_id, commit_count)
            )

    def get_leaderboard(self, repository_id: int) -> List[LeaderboardEntry]:
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT ca.author_email, ca.commit_count, c.username, c.profile_url
                FROM commit_aggregates ca
                LEFT JOIN contributors c
                    ON c.email = ca.author_email AND ca.status = %s
                WHERE ca.repository_id = %s
                ORDER BY ca.commit_count DESC, ca.author_email ASC
                """,
                (ResolutionStatus.RESOLVED.value, repository_id)
            )
            return [
                LeaderboardEntry(
                    email=row["author_email"],
                    commit_count=row["commit_count"],
                    username=row["username"],
                    profile_url=row["profile_url"],
                )
                for row in cursor.fetchall()
            ]
