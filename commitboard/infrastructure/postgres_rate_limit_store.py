"""PostgreSQL rate limit store shared by every worker process."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from commitboard.domain.models import RateLimitState
from commitboard.domain.rate_limit import Reservation, merge, reserve
from commitboard.domain.rate_limit_interface import IRateLimitStore
from commitboard.infrastructure.postgres_connection import PostgresConnection


logger = logging.getLogger(__name__)


def _state_from_row(row: Dict[str, Any]) -> RateLimitState:
    return RateLimitState(
        key=row["key"],
        remaining=row["remaining"],
        reset_at=row["reset_at"],
        limit=row["limit_total"],
    )


class PostgresRateLimitStore(PostgresConnection, IRateLimitStore):
    """One ``rate_limits`` row per credential, updated under ``SELECT ... FOR UPDATE``."""

    def try_reserve(self, key: str, threshold: int, now: datetime) -> Reservation:
        with self._transaction() as cursor:
            row = self._lock(cursor, key)
            if row is None:
                seeded, reservation = reserve(key, None, threshold, now)
                if self._insert(cursor, seeded) is not None:
                    return reservation
                # Another worker seeded the row first
                row = self._lock(cursor, key)

            current = _state_from_row(row)
            updated, reservation = reserve(key, current, threshold, now)
            if updated != current:
                self._write(cursor, updated)
            return reservation

    def record(self, state: RateLimitState) -> RateLimitState:
        with self._transaction() as cursor:
            inserted = self._insert(cursor, state)
            if inserted is not None:
                return _state_from_row(inserted)

            merged = merge(_state_from_row(self._lock(cursor, state.key)), state)
            self._write(cursor, merged)
            return merged

    def get(self, key: str) -> Optional[RateLimitState]:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM rate_limits WHERE key = %s", (key,))
            row = cursor.fetchone()
            return _state_from_row(row) if row else None

    def list_states(self) -> List[RateLimitState]:
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM rate_limits ORDER BY key")
            return [_state_from_row(row) for row in cursor.fetchall()]

    def _write(self, cursor, state: RateLimitState) -> None:
        cursor.execute(
            """
            UPDATE rate_limits
            SET remaining = %s, reset_at = %s, limit_total = %s, updated_at = CURRENT_TIMESTAMP
            WHERE key = %s
            """,
            (state.remaining, state.reset_at, state.limit, state.key)
        )

    def _lock(self, cursor, key: str) -> Optional[Dict[str, Any]]:
        cursor.execute("SELECT * FROM rate_limits WHERE key = %s FOR UPDATE", (key,))
        return cursor.fetchone()

    def _insert(self, cursor, state: RateLimitState) -> Optional[Dict[str, Any]]:
        """Insert the first row for a credential; None if one already exists."""
        cursor.execute(
            """
            INSERT INTO rate_limits (key, remaining, reset_at, limit_total)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (key) DO NOTHING
            RETURNING *
            """,
            (state.key, max(state.remaining, 0), state.reset_at, state.limit)
        )
        return cursor.fetchone()
