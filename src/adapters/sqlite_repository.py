"""SQLite repository adapter for local storage.

Implements RepositoryProtocol with SQLite backend. Each operation opens its
own connection with a busy timeout, so several poller processes sharing the
same database file serialize on the file lock; the unique indexes on
``estimates.estimate_id`` and ``delivery_claims(estimate_id,
celebration_type, channel_id)`` are the only synchronization.
"""

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Final

import pytz

from src.adapters.query_builders import (
    ClaimQueryCriteria,
    format_timestamp,
    parse_timestamp,
)
from src.config.logging_config import get_logger
from src.domain.exceptions import RepositoryError, StoreUnavailableError
from src.domain.models import (
    CelebrationType,
    Channel,
    ChannelKind,
    ClaimResult,
    ClaimStatus,
    ContentItem,
    ContentKind,
    DeliveryClaim,
    Estimate,
    PollRun,
    PollStatus,
    PollVariant,
    Salesperson,
)

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0

_SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS estimates (
        estimate_id TEXT PRIMARY KEY,
        salesperson TEXT NOT NULL DEFAULT '',
        customer_name TEXT NOT NULL DEFAULT '',
        amount REAL NOT NULL DEFAULT 0,
        sold_at TEXT NOT NULL,
        option_name TEXT NOT NULL DEFAULT '',
        is_tgl INTEGER NOT NULL DEFAULT 0,
        is_big_sale INTEGER NOT NULL DEFAULT 0,
        raw_data TEXT,
        poll_run_id TEXT,
        processed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_estimates_sold_at ON estimates(sold_at)",
    """
    CREATE TABLE IF NOT EXISTS delivery_claims (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        estimate_id TEXT NOT NULL,
        celebration_type TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        error_message TEXT,
        message_text TEXT,
        gif_url TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_delivery_claims_key
    ON delivery_claims(estimate_id, celebration_type, channel_id)
    """,
    "CREATE INDEX IF NOT EXISTS idx_delivery_claims_status ON delivery_claims(status)",
    """
    CREATE TABLE IF NOT EXISTS content_items (
        content_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        body TEXT NOT NULL,
        category TEXT NOT NULL,
        assigned_to TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        last_used_at TEXT,
        last_used_for TEXT,
        use_count INTEGER NOT NULL DEFAULT 0,
        paired_gif_id TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_content_items_lookup
    ON content_items(kind, category, is_active)
    """,
    """
    CREATE TABLE IF NOT EXISTS channels (
        channel_id TEXT PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        url TEXT NOT NULL,
        kind TEXT NOT NULL,
        tags TEXT NOT NULL DEFAULT '[]',
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS salespeople (
        name TEXT PRIMARY KEY,
        gender TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS poll_runs (
        run_id TEXT PRIMARY KEY,
        variant TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        window_from TEXT,
        window_to TEXT,
        events_found INTEGER NOT NULL DEFAULT 0,
        events_processed INTEGER NOT NULL DEFAULT 0,
        events_skipped INTEGER NOT NULL DEFAULT 0,
        celebrations_sent INTEGER NOT NULL DEFAULT 0,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        error_message TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_poll_runs_started_at ON poll_runs(started_at)",
    """
    CREATE TABLE IF NOT EXISTS poll_watermarks (
        poller_key TEXT PRIMARY KEY,
        last_poll_timestamp TEXT,
        recent_ids TEXT NOT NULL DEFAULT '[]',
        updated_at TEXT NOT NULL
    )
    """,
)


def _now_iso() -> str:
    return format_timestamp(datetime.now(tz=pytz.UTC)) or ""


class SQLiteRepository:
    """SQLite-based repository for local runs and tests."""

    def __init__(
        self, db_path: str, *, busy_timeout: float = SQLITE_BUSY_TIMEOUT_SECONDS
    ) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds to wait on a locked database file
        """
        self.db_path = db_path
        self._busy_timeout = busy_timeout

        # Ensure data directory exists
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Open a database connection.

        Raises:
            StoreUnavailableError: If the database file cannot be opened
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=self._busy_timeout)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open SQLite database: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection for the duration of the context."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    def close(self) -> None:
        """Nothing to release: connections are per operation."""
        logger.debug("sqlite_repository_closed", db_path=self.db_path)

    def _create_schema(self) -> None:
        """Create database schema if not exists."""
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        with self.connection() as conn:
            try:
                cursor = conn.cursor()
                for statement in _SCHEMA_STATEMENTS:
                    cursor.execute(statement)
                conn.commit()
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Failed to create schema: {e}") from e
        logger.info("sqlite_schema_creation_completed", db_path=str(self.db_path))

    # Estimates

    def estimate_exists(self, estimate_id: str) -> bool:
        with self.connection() as conn:
            try:
                row = conn.execute(
                    "SELECT 1 FROM estimates WHERE estimate_id = ?", (estimate_id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to check estimate: {e}") from e
        return row is not None

    def get_estimate(self, estimate_id: str) -> Estimate | None:
        with self.connection() as conn:
            try:
                row = conn.execute(
                    "SELECT * FROM estimates WHERE estimate_id = ?", (estimate_id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to load estimate: {e}") from e
        return self._row_to_estimate(row) if row else None

    def insert_estimate(self, estimate: Estimate) -> bool:
        """Insert an estimate once.

        Returns:
            True if inserted, False if the id already exists (never overwrites)
        """
        processed_at = estimate.processed_at or datetime.now(tz=pytz.UTC)
        with self.connection() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO estimates (
                        estimate_id, salesperson, customer_name, amount, sold_at,
                        option_name, is_tgl, is_big_sale, raw_data, poll_run_id,
                        processed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        estimate.estimate_id,
                        estimate.salesperson,
                        estimate.customer_name,
                        estimate.amount,
                        format_timestamp(estimate.sold_at),
                        estimate.option_name,
                        int(estimate.is_tgl),
                        int(estimate.is_big_sale),
                        json.dumps(estimate.raw_data, default=str),
                        estimate.poll_run_id,
                        format_timestamp(processed_at),
                    ),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to insert estimate: {e}") from e
        return cursor.rowcount == 1

    def delete_estimate(self, estimate_id: str) -> int:
        with self.connection() as conn:
            try:
                cursor = conn.execute(
                    "DELETE FROM estimates WHERE estimate_id = ?", (estimate_id,)
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to delete estimate: {e}") from e
        return cursor.rowcount

    # Delivery claims

    def has_claim(
        self,
        estimate_id: str,
        celebration_type: CelebrationType | None = None,
        channel_id: str | None = None,
    ) -> bool:
        query = "SELECT 1 FROM delivery_claims WHERE estimate_id = ?"
        params: list[Any] = [estimate_id]
        if celebration_type is not None:
            query += " AND celebration_type = ?"
            params.append(CelebrationType(celebration_type).value)
        if channel_id is not None:
            query += " AND channel_id = ?"
            params.append(channel_id)
        query += " LIMIT 1"

        with self.connection() as conn:
            try:
                row = conn.execute(query, params).fetchone()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to check claim: {e}") from e
        return row is not None

    def insert_claim(self, claim: DeliveryClaim) -> ClaimResult:
        """Insert a pending claim; a key conflict is a tagged result."""
        now = _now_iso()
        with self.connection() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO delivery_claims (
                        estimate_id, celebration_type, channel_id, status,
                        created_at, updated_at, error_message, message_text, gif_url
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        claim.estimate_id,
                        claim.celebration_type.value,
                        claim.channel_id,
                        claim.status.value,
                        format_timestamp(claim.created_at) or now,
                        now,
                        claim.error_message,
                        claim.message_text,
                        claim.gif_url,
                    ),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to insert claim: {e}") from e

        if cursor.rowcount == 1:
            return ClaimResult.INSERTED
        return ClaimResult.ALREADY_CLAIMED

    def update_claim(
        self,
        estimate_id: str,
        celebration_type: CelebrationType,
        channel_id: str,
        *,
        status: ClaimStatus,
        error_message: str | None = None,
        message_text: str | None = None,
        gif_url: str | None = None,
    ) -> None:
        with self.connection() as conn:
            try:
                conn.execute(
                    """
                    UPDATE delivery_claims
                    SET status = ?, error_message = ?,
                        message_text = COALESCE(?, message_text),
                        gif_url = COALESCE(?, gif_url),
                        updated_at = ?
                    WHERE estimate_id = ? AND celebration_type = ? AND channel_id = ?
                    """,
                    (
                        ClaimStatus(status).value,
                        error_message,
                        message_text,
                        gif_url,
                        _now_iso(),
                        estimate_id,
                        CelebrationType(celebration_type).value,
                        channel_id,
                    ),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to update claim: {e}") from e

    def list_claims(
        self,
        *,
        estimate_id: str | None = None,
        statuses: Iterable[ClaimStatus] | None = None,
        older_than: datetime | None = None,
    ) -> list[DeliveryClaim]:
        criteria = ClaimQueryCriteria(
            estimate_id=estimate_id, statuses=statuses, older_than=older_than
        )
        where, params = criteria.to_where_clause("?")
        with self.connection() as conn:
            try:
                rows = conn.execute(
                    f"SELECT * FROM delivery_claims WHERE {where} ORDER BY created_at",
                    params,
                ).fetchall()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to list claims: {e}") from e
        return [self._row_to_claim(row) for row in rows]

    def delete_claims(
        self,
        *,
        estimate_id: str | None = None,
        statuses: Iterable[ClaimStatus] | None = None,
        older_than: datetime | None = None,
    ) -> int:
        criteria = ClaimQueryCriteria(
            estimate_id=estimate_id, statuses=statuses, older_than=older_than
        )
        where, params = criteria.to_where_clause("?")
        with self.connection() as conn:
            try:
                cursor = conn.execute(
                    f"DELETE FROM delivery_claims WHERE {where}", params
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to delete claims: {e}") from e
        return cursor.rowcount

    # Content

    def get_active_content(
        self,
        kind: ContentKind,
        category: CelebrationType,
        *,
        assigned_to: str | None,
    ) -> list[ContentItem]:
        query = (
            "SELECT * FROM content_items "
            "WHERE kind = ? AND category = ? AND is_active = 1 AND "
        )
        params: list[Any] = [ContentKind(kind).value, CelebrationType(category).value]
        if assigned_to is None:
            query += "assigned_to IS NULL"
        else:
            query += "assigned_to = ?"
            params.append(assigned_to)

        with self.connection() as conn:
            try:
                rows = conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to load content: {e}") from e
        return [self._row_to_content(row) for row in rows]

    def get_content_item(self, content_id: str) -> ContentItem | None:
        with self.connection() as conn:
            try:
                row = conn.execute(
                    "SELECT * FROM content_items WHERE content_id = ?", (content_id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to load content item: {e}") from e
        return self._row_to_content(row) if row else None

    def record_content_usage(
        self, content_id: str, *, used_for: str, used_at: datetime
    ) -> None:
        with self.connection() as conn:
            try:
                conn.execute(
                    """
                    UPDATE content_items
                    SET use_count = use_count + 1, last_used_at = ?, last_used_for = ?
                    WHERE content_id = ?
                    """,
                    (format_timestamp(used_at), used_for, content_id),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to record content usage: {e}") from e

    def save_content_items(self, items: list[ContentItem]) -> int:
        if not items:
            return 0
        with self.connection() as conn:
            try:
                conn.executemany(
                    """
                    INSERT INTO content_items (
                        content_id, kind, body, category, assigned_to, is_active,
                        last_used_at, last_used_for, use_count, paired_gif_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(content_id) DO UPDATE SET
                        kind = excluded.kind,
                        body = excluded.body,
                        category = excluded.category,
                        assigned_to = excluded.assigned_to,
                        is_active = excluded.is_active,
                        last_used_at = excluded.last_used_at,
                        last_used_for = excluded.last_used_for,
                        use_count = excluded.use_count,
                        paired_gif_id = excluded.paired_gif_id
                    """,
                    [
                        (
                            item.content_id,
                            item.kind.value,
                            item.body,
                            item.category.value,
                            item.assigned_to,
                            int(item.is_active),
                            format_timestamp(item.last_used_at),
                            item.last_used_for,
                            item.use_count,
                            item.paired_gif_id,
                        )
                        for item in items
                    ],
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to save content: {e}") from e
        return len(items)

    # Channels and salespeople

    def get_active_channels(self, celebration_type: CelebrationType) -> list[Channel]:
        with self.connection() as conn:
            try:
                rows = conn.execute(
                    "SELECT * FROM channels WHERE is_active = 1 ORDER BY name"
                ).fetchall()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to load channels: {e}") from e

        wanted = CelebrationType(celebration_type)
        channels = [self._row_to_channel(row) for row in rows]
        return [channel for channel in channels if wanted in channel.tags]

    def save_channels(self, channels: list[Channel]) -> int:
        if not channels:
            return 0
        with self.connection() as conn:
            try:
                conn.executemany(
                    """
                    INSERT INTO channels (channel_id, name, url, kind, tags, is_active)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(channel_id) DO UPDATE SET
                        name = excluded.name,
                        url = excluded.url,
                        kind = excluded.kind,
                        tags = excluded.tags,
                        is_active = excluded.is_active
                    """,
                    [
                        (
                            channel.channel_id,
                            channel.name,
                            channel.url,
                            channel.kind.value,
                            json.dumps([tag.value for tag in channel.tags]),
                            int(channel.is_active),
                        )
                        for channel in channels
                    ],
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to save channels: {e}") from e
        return len(channels)

    def get_salesperson(self, name: str) -> Salesperson | None:
        with self.connection() as conn:
            try:
                row = conn.execute(
                    "SELECT name, gender FROM salespeople WHERE name = ?", (name,)
                ).fetchone()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to load salesperson: {e}") from e
        if not row:
            return None
        return Salesperson(name=row["name"], gender=row["gender"])

    def save_salespeople(self, people: list[Salesperson]) -> int:
        if not people:
            return 0
        with self.connection() as conn:
            try:
                conn.executemany(
                    """
                    INSERT INTO salespeople (name, gender) VALUES (?, ?)
                    ON CONFLICT(name) DO UPDATE SET gender = excluded.gender
                    """,
                    [(person.name, person.gender) for person in people],
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to save salespeople: {e}") from e
        return len(people)

    # Poll runs

    def create_poll_run(self, run: PollRun) -> None:
        with self.connection() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO poll_runs (
                        run_id, variant, status, started_at, window_from, window_to
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run.run_id,
                        run.variant.value,
                        run.status.value,
                        format_timestamp(run.started_at),
                        format_timestamp(run.window_from),
                        format_timestamp(run.window_to),
                    ),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Failed to create poll run: {e}") from e

    def update_poll_run(self, run: PollRun) -> None:
        with self.connection() as conn:
            try:
                conn.execute(
                    """
                    UPDATE poll_runs
                    SET status = ?, window_from = ?, window_to = ?,
                        events_found = ?, events_processed = ?, events_skipped = ?,
                        celebrations_sent = ?, duration_ms = ?, error_message = ?
                    WHERE run_id = ?
                    """,
                    (
                        run.status.value,
                        format_timestamp(run.window_from),
                        format_timestamp(run.window_to),
                        run.events_found,
                        run.events_processed,
                        run.events_skipped,
                        run.celebrations_sent,
                        run.duration_ms,
                        run.error_message,
                        run.run_id,
                    ),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to update poll run: {e}") from e

    def get_recent_poll_runs(self, limit: int = 20) -> list[PollRun]:
        with self.connection() as conn:
            try:
                rows = conn.execute(
                    "SELECT * FROM poll_runs ORDER BY started_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            except sqlite3.Error as e:
                raise RepositoryError(f"Failed to load poll runs: {e}") from e
        return [self._row_to_poll_run(row) for row in rows]

    # Row mapping

    def _row_to_estimate(self, row: sqlite3.Row) -> Estimate:
        return Estimate(
            estimate_id=row["estimate_id"],
            salesperson=row["salesperson"],
            customer_name=row["customer_name"],
            amount=row["amount"],
            sold_at=parse_timestamp(row["sold_at"]),
            option_name=row["option_name"],
            is_tgl=bool(row["is_tgl"]),
            is_big_sale=bool(row["is_big_sale"]),
            raw_data=json.loads(row["raw_data"]) if row["raw_data"] else {},
            poll_run_id=row["poll_run_id"],
            processed_at=parse_timestamp(row["processed_at"]),
        )

    def _row_to_claim(self, row: sqlite3.Row) -> DeliveryClaim:
        return DeliveryClaim(
            estimate_id=row["estimate_id"],
            celebration_type=CelebrationType(row["celebration_type"]),
            channel_id=row["channel_id"],
            status=ClaimStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            error_message=row["error_message"],
            message_text=row["message_text"],
            gif_url=row["gif_url"],
        )

    def _row_to_content(self, row: sqlite3.Row) -> ContentItem:
        return ContentItem(
            content_id=row["content_id"],
            kind=ContentKind(row["kind"]),
            body=row["body"],
            category=CelebrationType(row["category"]),
            assigned_to=row["assigned_to"],
            is_active=bool(row["is_active"]),
            last_used_at=parse_timestamp(row["last_used_at"]),
            last_used_for=row["last_used_for"],
            use_count=row["use_count"],
            paired_gif_id=row["paired_gif_id"],
        )

    def _row_to_channel(self, row: sqlite3.Row) -> Channel:
        return Channel(
            channel_id=row["channel_id"],
            name=row["name"],
            url=row["url"],
            kind=ChannelKind(row["kind"]),
            tags=[CelebrationType(tag) for tag in json.loads(row["tags"] or "[]")],
            is_active=bool(row["is_active"]),
        )

    def _row_to_poll_run(self, row: sqlite3.Row) -> PollRun:
        return PollRun(
            run_id=row["run_id"],
            variant=PollVariant(row["variant"]),
            status=PollStatus(row["status"]),
            started_at=parse_timestamp(row["started_at"]),
            window_from=parse_timestamp(row["window_from"]),
            window_to=parse_timestamp(row["window_to"]),
            events_found=row["events_found"],
            events_processed=row["events_processed"],
            events_skipped=row["events_skipped"],
            celebrations_sent=row["celebrations_sent"],
            duration_ms=row["duration_ms"],
            error_message=row["error_message"],
        )
