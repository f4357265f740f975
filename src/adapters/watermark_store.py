"""Poll watermark persistence adapter.

Stores the last successful poll timestamp and the recently processed id FIFO
per poller key. Works with both SQLite and PostgreSQL connections.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from typing import Any, Final, Protocol

import pytz

from src.adapters.query_builders import ensure_utc, format_timestamp, parse_timestamp
from src.config.logging_config import get_logger
from src.domain.exceptions import RepositoryError
from src.domain.models import Watermark

logger = get_logger(__name__)


class CursorProtocol(Protocol):
    """Protocol for database cursors used by the watermark store."""

    def execute(self, query: str, params: tuple[Any, ...]) -> Any:
        """Execute a SQL statement with positional parameters."""

    def fetchone(self) -> Any:
        """Fetch a single result row."""

    def close(self) -> None:
        """Release cursor resources."""


class ConnectionProtocol(Protocol):
    """Protocol for connections compatible with the watermark store."""

    def cursor(self) -> CursorProtocol:
        """Create a database cursor."""

    def commit(self) -> None:
        """Commit the active transaction."""


GetConnectionCallable = Callable[[], AbstractContextManager[ConnectionProtocol]]


def merge_recent_ids(
    current: list[str], new_ids: Iterable[str], cache_size: int
) -> list[str]:
    """Prepend ``new_ids`` (newest first) and trim the FIFO to ``cache_size``.

    Example:
        >>> merge_recent_ids(["b", "a"], ["c", "a"], 3)
        ['c', 'a', 'b']
    """
    merged: list[str] = []
    seen: set[str] = set()
    for estimate_id in [*new_ids, *current]:
        if estimate_id in seen:
            continue
        seen.add(estimate_id)
        merged.append(estimate_id)
    return merged[:cache_size]


class WatermarkStore:
    """Persistence layer for poll watermarks."""

    _TABLE_NAME: Final[str] = "poll_watermarks"

    def __init__(self, get_conn: GetConnectionCallable) -> None:
        """Initialize the store.

        Args:
            get_conn: Callable returning a context manager that yields a database connection.
        """
        self._get_conn = get_conn

    def get(self, poller_key: str) -> Watermark:
        """Load the watermark for a poller key (empty when never stored)."""
        with self._connection_scope() as conn:
            row = self._select(conn, poller_key)

        if not row:
            return Watermark(poller_key=poller_key)

        return Watermark(
            poller_key=poller_key,
            last_poll_timestamp=parse_timestamp(row[0]),
            recent_ids=json.loads(row[1]) if row[1] else [],
        )

    def advance(self, poller_key: str, timestamp: datetime) -> datetime:
        """Move the watermark forward to ``timestamp``.

        The stored value never moves backwards: an older timestamp is a no-op.

        Returns:
            The watermark value after the update
        """
        timestamp = ensure_utc(timestamp)
        with self._connection_scope() as conn:
            row = self._select(conn, poller_key)
            current = parse_timestamp(row[0]) if row else None
            if current is not None and current >= timestamp:
                logger.debug(
                    "watermark_advance_ignored",
                    poller_key=poller_key,
                    current=current.isoformat(),
                    requested=timestamp.isoformat(),
                )
                return current

            cursor = conn.cursor()
            try:
                cursor.execute(
                    self._build_advance_sql(conn),
                    (poller_key, self._db_timestamp(conn, timestamp), self._now(conn)),
                )
                conn.commit()
            finally:
                cursor.close()

        logger.info(
            "watermark_advanced",
            poller_key=poller_key,
            previous=current.isoformat() if current else None,
            watermark=timestamp.isoformat(),
        )
        return timestamp

    def remember_ids(
        self, poller_key: str, estimate_ids: Iterable[str], cache_size: int
    ) -> list[str]:
        """Push ids to the front of the recent-id FIFO and trim it."""
        new_ids = list(estimate_ids)
        with self._connection_scope() as conn:
            row = self._select(conn, poller_key)
            current = json.loads(row[1]) if row and row[1] else []
            merged = merge_recent_ids(current, new_ids, cache_size)
            self._write_recent_ids(conn, poller_key, merged)
        return merged

    def forget_ids(self, poller_key: str, estimate_ids: Iterable[str]) -> list[str]:
        """Evict ids from the recent-id FIFO."""
        evicted = set(estimate_ids)
        with self._connection_scope() as conn:
            row = self._select(conn, poller_key)
            if not row:
                return []
            current = json.loads(row[1]) if row[1] else []
            remaining = [estimate_id for estimate_id in current if estimate_id not in evicted]
            if len(remaining) != len(current):
                self._write_recent_ids(conn, poller_key, remaining)
        return remaining

    @contextmanager
    def _connection_scope(self) -> Iterator[ConnectionProtocol]:
        try:
            with self._get_conn() as conn:
                yield conn
        except sqlite3.Error as exc:
            raise RepositoryError(f"Watermark store error: {exc}") from exc

    def _select(self, conn: ConnectionProtocol, poller_key: str) -> Any:
        cursor = conn.cursor()
        try:
            cursor.execute(self._build_select_sql(conn), (poller_key,))
            return cursor.fetchone()
        finally:
            cursor.close()

    def _write_recent_ids(
        self, conn: ConnectionProtocol, poller_key: str, recent_ids: list[str]
    ) -> None:
        cursor = conn.cursor()
        try:
            cursor.execute(
                self._build_recent_ids_sql(conn),
                (poller_key, json.dumps(recent_ids), self._now(conn)),
            )
            conn.commit()
        finally:
            cursor.close()

    @staticmethod
    def _is_sqlite(conn: ConnectionProtocol) -> bool:
        return isinstance(conn, sqlite3.Connection)

    def _db_timestamp(self, conn: ConnectionProtocol, value: datetime) -> Any:
        return format_timestamp(value) if self._is_sqlite(conn) else ensure_utc(value)

    def _now(self, conn: ConnectionProtocol) -> Any:
        return self._db_timestamp(conn, datetime.now(tz=pytz.UTC))

    def _build_select_sql(self, conn: ConnectionProtocol) -> str:
        placeholder = "?" if self._is_sqlite(conn) else "%s"
        return (
            "SELECT last_poll_timestamp, recent_ids "
            f"FROM {self._TABLE_NAME} WHERE poller_key = " + placeholder
        )

    def _build_advance_sql(self, conn: ConnectionProtocol) -> str:
        if self._is_sqlite(conn):
            return (
                f"INSERT INTO {self._TABLE_NAME} (poller_key, last_poll_timestamp, "
                "recent_ids, updated_at) VALUES (?, ?, '[]', ?) "
                "ON CONFLICT(poller_key) DO UPDATE SET "
                "last_poll_timestamp=MAX(COALESCE(last_poll_timestamp, ''), "
                "excluded.last_poll_timestamp), "
                "updated_at=excluded.updated_at"
            )
        return (
            f"INSERT INTO {self._TABLE_NAME} (poller_key, last_poll_timestamp, "
            "recent_ids, updated_at) VALUES (%s, %s, '[]', %s) "
            "ON CONFLICT (poller_key) DO UPDATE SET "
            f"last_poll_timestamp=GREATEST({self._TABLE_NAME}.last_poll_timestamp, "
            "EXCLUDED.last_poll_timestamp), "
            "updated_at=EXCLUDED.updated_at"
        )

    def _build_recent_ids_sql(self, conn: ConnectionProtocol) -> str:
        if self._is_sqlite(conn):
            return (
                f"INSERT INTO {self._TABLE_NAME} (poller_key, recent_ids, updated_at) "
                "VALUES (?, ?, ?) "
                "ON CONFLICT(poller_key) DO UPDATE SET "
                "recent_ids=excluded.recent_ids, updated_at=excluded.updated_at"
            )
        return (
            f"INSERT INTO {self._TABLE_NAME} (poller_key, recent_ids, updated_at) "
            "VALUES (%s, %s, %s) "
            "ON CONFLICT (poller_key) DO UPDATE SET "
            "recent_ids=EXCLUDED.recent_ids, updated_at=EXCLUDED.updated_at"
        )
