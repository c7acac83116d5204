"""Shared PostgreSQL connection handling for the storage adapters."""
import logging
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import RealDictCursor


logger = logging.getLogger(__name__)


class PostgresConnection:
    """Owns one psycopg2 connection; every unit of work is one transaction."""

    def __init__(self, connection_string: str):
        """Initialize PostgreSQL connection.

        Args:
            connection_string: PostgreSQL connection string
        """
        self._connection_string = connection_string
        self._conn = psycopg2.connect(connection_string)
        self._conn.autocommit = False
        logger.info(f"{self.__class__.__name__} connected to PostgreSQL database")

    @contextmanager
    def _transaction(self):
        """Yield a dict cursor; commit on success, roll back and re-raise on error."""
        cursor = self._conn.cursor(cursor_factory=RealDictCursor)
        try:
            yield cursor
            self._conn.commit()
        except Exception as e:
            self._conn.rollback()
            logger.error(f"Database error in {self.__class__.__name__}: {e}")
            raise
        finally:
            cursor.close()

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            logger.info("Closed PostgreSQL connection")
