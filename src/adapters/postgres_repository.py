"""PostgreSQL repository implementation using psycopg2 with connection pooling.

Schema is owned by Alembic (``alembic/versions``); this adapter never
creates tables. Every method borrows its own pooled connection, so pollers
running in separate threads never share a transaction.
"""

import json
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime
from threading import Lock
from time import sleep
from typing import TYPE_CHECKING, Any, Final

import pytz
from psycopg2 import Error as PsycopgError
from psycopg2 import OperationalError as PsycopgOperationalError
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor

from src.adapters.query_builders import ClaimQueryCriteria, ensure_utc
from src.config.logging_config import get_logger
from src.domain.exceptions import (
    ConfigurationError,
    RepositoryError,
    StoreUnavailableError,
)
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

if TYPE_CHECKING:
    from src.config.settings import Settings


POOL_ACQUIRE_ATTEMPTS: Final[int] = 5
POOL_RETRY_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_RETRY_MAX_DELAY_SECONDS: Final[float] = 2.0

logger = get_logger(__name__)


def _utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


class PostgresRepository:
    """Celebration store on a psycopg2 ``ThreadedConnectionPool``."""

    def __init__(
        self,
        settings: "Settings",
        password: str,
        *,
        acquire_attempts: int = POOL_ACQUIRE_ATTEMPTS,
    ) -> None:
        """Open the pool.

        Raises:
            ConfigurationError: If the pool bounds are inconsistent
            StoreUnavailableError: If PostgreSQL cannot be reached
        """
        min_connections = settings.postgres_min_connections
        max_connections = settings.postgres_max_connections
        if min_connections <= 0 or max_connections < min_connections:
            raise ConfigurationError(
                "PostgreSQL pool bounds must satisfy 0 < min_connections <= max_connections"
            )

        self._database = settings.postgres_database
        self._max_connections = max_connections
        self._acquire_attempts = acquire_attempts
        self._in_use = 0
        self._lock = Lock()
        self._pool = self._open_pool(settings, password)

    def _open_pool(
        self, settings: "Settings", password: str
    ) -> psycopg2_pool.ThreadedConnectionPool:
        connect_kwargs: dict[str, Any] = {
            "host": settings.postgres_host,
            "port": settings.postgres_port,
            "dbname": settings.postgres_database,
            "user": settings.postgres_user,
            "password": password,
            "connect_timeout": settings.postgres_connect_timeout_seconds,
            "application_name": settings.postgres_application_name,
            "options": f"-c statement_timeout={settings.postgres_statement_timeout_ms}",
        }
        if settings.postgres_ssl_mode:
            connect_kwargs["sslmode"] = settings.postgres_ssl_mode

        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                settings.postgres_min_connections, self._max_connections, **connect_kwargs
            )
        except PsycopgError as exc:
            raise StoreUnavailableError(
                f"Cannot reach PostgreSQL at {settings.postgres_host}:{settings.postgres_port}: {exc}"
            ) from exc

        logger.info(
            "postgres_pool_opened",
            host=settings.postgres_host,
            database=self._database,
            max_connections=self._max_connections,
            statement_timeout_ms=settings.postgres_statement_timeout_ms,
        )
        return pool

    def _checkout(self) -> extensions.connection:
        """Borrow a connection, backing off while the pool is exhausted."""
        attempt = 0
        delay = POOL_RETRY_BASE_DELAY_SECONDS
        while True:
            attempt += 1
            try:
                conn = self._pool.getconn()
                break
            except psycopg2_pool.PoolError as exc:
                if attempt >= self._acquire_attempts:
                    raise StoreUnavailableError(
                        f"PostgreSQL pool exhausted after {attempt} attempts "
                        f"({self._max_connections} connections)"
                    ) from exc
                logger.warning(
                    "postgres_pool_exhausted",
                    attempt=attempt,
                    wait_seconds=delay,
                    in_use=self._in_use,
                )
                sleep(delay)
                delay = min(delay * 2, POOL_RETRY_MAX_DELAY_SECONDS)
            except PsycopgOperationalError as exc:
                raise StoreUnavailableError(f"PostgreSQL connection failed: {exc}") from exc

        with self._lock:
            self._in_use += 1
        return conn

    def _checkin(self, conn: extensions.connection, *, discard: bool) -> None:
        try:
            self._pool.putconn(conn, close=discard)
        except PsycopgError:
            logger.warning("postgres_putconn_failed", discard=discard, exc_info=True)
        finally:
            with self._lock:
                self._in_use = max(self._in_use - 1, 0)

    def _rollback(self, conn: extensions.connection) -> bool:
        try:
            conn.rollback()
        except PsycopgError:
            logger.warning(
                "postgres_rollback_failed", database=self._database, exc_info=True
            )
            return False
        return True

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        logger.info("postgres_pool_closed", database=self._database)

    @contextmanager
    def _get_connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection; broken connections are dropped from the pool.

        Raises:
            StoreUnavailableError: On connection-level failures
            RepositoryError: On any other database error
        """
        conn = self._checkout()
        conn.autocommit = False
        discard = False
        try:
            yield conn
        except PsycopgOperationalError as exc:
            discard = True
            raise StoreUnavailableError(f"PostgreSQL unavailable: {exc}") from exc
        except PsycopgError as exc:
            discard = not self._rollback(conn)
            raise RepositoryError(f"PostgreSQL error: {exc}") from exc
        finally:
            if (
                not discard
                and conn.get_transaction_status() != extensions.TRANSACTION_STATUS_IDLE
            ):
                discard = not self._rollback(conn)
            self._checkin(conn, discard=discard)

    def connection(self) -> AbstractContextManager[extensions.connection]:
        """Borrow a pooled connection (used by the watermark store)."""
        return self._get_connection()

    def _fetchone(self, query: str, params: Iterable[Any]) -> dict[str, Any] | None:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, tuple(params))
                row = cur.fetchone()
        return dict(row) if row else None

    def _fetchall(self, query: str, params: Iterable[Any]) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, tuple(params))
                rows = cur.fetchall()
        return [dict(row) for row in rows]

    def _execute(self, query: str, params: Iterable[Any]) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, tuple(params))
                rowcount = cur.rowcount
            conn.commit()
        return rowcount

    def _execute_many(self, query: str, rows: list[tuple[Any, ...]]) -> None:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.executemany(query, rows)
            conn.commit()

    # Estimates

    def estimate_exists(self, estimate_id: str) -> bool:
        row = self._fetchone(
            "SELECT 1 AS found FROM estimates WHERE estimate_id = %s", (estimate_id,)
        )
        return row is not None

    def get_estimate(self, estimate_id: str) -> Estimate | None:
        row = self._fetchone(
            "SELECT * FROM estimates WHERE estimate_id = %s", (estimate_id,)
        )
        return self._row_to_estimate(row) if row else None

    def insert_estimate(self, estimate: Estimate) -> bool:
        """Insert an estimate once; returns False on an existing id."""
        processed_at = estimate.processed_at or datetime.now(tz=pytz.UTC)
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO estimates (
                        estimate_id, salesperson, customer_name, amount, sold_at,
                        option_name, is_tgl, is_big_sale, raw_data, poll_run_id,
                        processed_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                    ON CONFLICT (estimate_id) DO NOTHING
                    RETURNING estimate_id
                    """,
                    (
                        estimate.estimate_id,
                        estimate.salesperson,
                        estimate.customer_name,
                        estimate.amount,
                        _utc(estimate.sold_at),
                        estimate.option_name,
                        estimate.is_tgl,
                        estimate.is_big_sale,
                        json.dumps(estimate.raw_data, default=str),
                        estimate.poll_run_id,
                        _utc(processed_at),
                    ),
                )
                inserted = cur.fetchone() is not None
            conn.commit()
        return inserted

    def delete_estimate(self, estimate_id: str) -> int:
        return self._execute(
            "DELETE FROM estimates WHERE estimate_id = %s", (estimate_id,)
        )

    # Delivery claims

    def has_claim(
        self,
        estimate_id: str,
        celebration_type: CelebrationType | None = None,
        channel_id: str | None = None,
    ) -> bool:
        query = "SELECT 1 AS found FROM delivery_claims WHERE estimate_id = %s"
        params: list[Any] = [estimate_id]
        if celebration_type is not None:
            query += " AND celebration_type = %s"
            params.append(CelebrationType(celebration_type).value)
        if channel_id is not None:
            query += " AND channel_id = %s"
            params.append(channel_id)
        query += " LIMIT 1"
        return self._fetchone(query, params) is not None

    def insert_claim(self, claim: DeliveryClaim) -> ClaimResult:
        """Insert a pending claim; a key conflict is a tagged result."""
        now = datetime.now(tz=pytz.UTC)
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO delivery_claims (
                        estimate_id, celebration_type, channel_id, status,
                        created_at, updated_at, error_message, message_text, gif_url
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (estimate_id, celebration_type, channel_id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        claim.estimate_id,
                        claim.celebration_type.value,
                        claim.channel_id,
                        claim.status.value,
                        _utc(claim.created_at) or now,
                        now,
                        claim.error_message,
                        claim.message_text,
                        claim.gif_url,
                    ),
                )
                inserted = cur.fetchone() is not None
            conn.commit()
        return ClaimResult.INSERTED if inserted else ClaimResult.ALREADY_CLAIMED

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
        self._execute(
            """
            UPDATE delivery_claims
            SET status = %s, error_message = %s,
                message_text = COALESCE(%s, message_text),
                gif_url = COALESCE(%s, gif_url),
                updated_at = %s
            WHERE estimate_id = %s AND celebration_type = %s AND channel_id = %s
            """,
            (
                ClaimStatus(status).value,
                error_message,
                message_text,
                gif_url,
                datetime.now(tz=pytz.UTC),
                estimate_id,
                CelebrationType(celebration_type).value,
                channel_id,
            ),
        )

    def list_claims(
        self,
        *,
        estimate_id: str | None = None,
        statuses: Iterable[ClaimStatus] | None = None,
        older_than: datetime | None = None,
    ) -> list[DeliveryClaim]:
        where, params = ClaimQueryCriteria(
            estimate_id=estimate_id, statuses=statuses, older_than=older_than
        ).to_where_clause("%s")
        rows = self._fetchall(
            f"SELECT * FROM delivery_claims WHERE {where} ORDER BY created_at", params
        )
        return [self._row_to_claim(row) for row in rows]

    def delete_claims(
        self,
        *,
        estimate_id: str | None = None,
        statuses: Iterable[ClaimStatus] | None = None,
        older_than: datetime | None = None,
    ) -> int:
        where, params = ClaimQueryCriteria(
            estimate_id=estimate_id, statuses=statuses, older_than=older_than
        ).to_where_clause("%s")
        return self._execute(f"DELETE FROM delivery_claims WHERE {where}", params)

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
            "WHERE kind = %s AND category = %s AND is_active AND "
        )
        params: list[Any] = [ContentKind(kind).value, CelebrationType(category).value]
        if assigned_to is None:
            query += "assigned_to IS NULL"
        else:
            query += "assigned_to = %s"
            params.append(assigned_to)
        return [self._row_to_content(row) for row in self._fetchall(query, params)]

    def get_content_item(self, content_id: str) -> ContentItem | None:
        row = self._fetchone(
            "SELECT * FROM content_items WHERE content_id = %s", (content_id,)
        )
        return self._row_to_content(row) if row else None

    def record_content_usage(
        self, content_id: str, *, used_for: str, used_at: datetime
    ) -> None:
        self._execute(
            """
            UPDATE content_items
            SET use_count = use_count + 1, last_used_at = %s, last_used_for = %s
            WHERE content_id = %s
            """,
            (_utc(used_at), used_for, content_id),
        )

    def save_content_items(self, items: list[ContentItem]) -> int:
        if not items:
            return 0
        self._execute_many(
            """
            INSERT INTO content_items (
                content_id, kind, body, category, assigned_to, is_active,
                last_used_at, last_used_for, use_count, paired_gif_id
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (content_id) DO UPDATE SET
                kind = EXCLUDED.kind,
                body = EXCLUDED.body,
                category = EXCLUDED.category,
                assigned_to = EXCLUDED.assigned_to,
                is_active = EXCLUDED.is_active,
                last_used_at = EXCLUDED.last_used_at,
                last_used_for = EXCLUDED.last_used_for,
                use_count = EXCLUDED.use_count,
                paired_gif_id = EXCLUDED.paired_gif_id
            """,
            [
                (
                    item.content_id,
                    item.kind.value,
                    item.body,
                    item.category.value,
                    item.assigned_to,
                    item.is_active,
                    _utc(item.last_used_at),
                    item.last_used_for,
                    item.use_count,
                    item.paired_gif_id,
                )
                for item in items
            ],
        )
        return len(items)

    # Channels and salespeople

    def get_active_channels(self, celebration_type: CelebrationType) -> list[Channel]:
        rows = self._fetchall(
            "SELECT * FROM channels WHERE is_active AND tags ? %s ORDER BY name",
            (CelebrationType(celebration_type).value,),
        )
        return [self._row_to_channel(row) for row in rows]

    def save_channels(self, channels: list[Channel]) -> int:
        if not channels:
            return 0
        self._execute_many(
            """
            INSERT INTO channels (channel_id, name, url, kind, tags, is_active)
            VALUES (%s, %s, %s, %s, %s::jsonb, %s)
            ON CONFLICT (channel_id) DO UPDATE SET
                name = EXCLUDED.name,
                url = EXCLUDED.url,
                kind = EXCLUDED.kind,
                tags = EXCLUDED.tags,
                is_active = EXCLUDED.is_active
            """,
            [
                (
                    channel.channel_id,
                    channel.name,
                    channel.url,
                    channel.kind.value,
                    json.dumps([tag.value for tag in channel.tags]),
                    channel.is_active,
                )
                for channel in channels
            ],
        )
        return len(channels)

    def get_salesperson(self, name: str) -> Salesperson | None:
        row = self._fetchone(
            "SELECT name, gender FROM salespeople WHERE name = %s", (name,)
        )
        if not row:
            return None
        return Salesperson(name=row["name"], gender=row["gender"])

    def save_salespeople(self, people: list[Salesperson]) -> int:
        if not people:
            return 0
        self._execute_many(
            """
            INSERT INTO salespeople (name, gender) VALUES (%s, %s)
            ON CONFLICT (name) DO UPDATE SET gender = EXCLUDED.gender
            """,
            [(person.name, person.gender) for person in people],
        )
        return len(people)

    # Poll runs

    def create_poll_run(self, run: PollRun) -> None:
        try:
            self._execute(
                """
                INSERT INTO poll_runs (
                    run_id, variant, status, started_at, window_from, window_to
                ) VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    run.run_id,
                    run.variant.value,
                    run.status.value,
                    _utc(run.started_at),
                    _utc(run.window_from),
                    _utc(run.window_to),
                ),
            )
        except RepositoryError as exc:
            if isinstance(exc, StoreUnavailableError):
                raise
            raise StoreUnavailableError(f"Failed to create poll run: {exc}") from exc

    def update_poll_run(self, run: PollRun) -> None:
        self._execute(
            """
            UPDATE poll_runs
            SET status = %s, window_from = %s, window_to = %s,
                events_found = %s, events_processed = %s, events_skipped = %s,
                celebrations_sent = %s, duration_ms = %s, error_message = %s
            WHERE run_id = %s
            """,
            (
                run.status.value,
                _utc(run.window_from),
                _utc(run.window_to),
                run.events_found,
                run.events_processed,
                run.events_skipped,
                run.celebrations_sent,
                run.duration_ms,
                run.error_message,
                run.run_id,
            ),
        )

    def get_recent_poll_runs(self, limit: int = 20) -> list[PollRun]:
        rows = self._fetchall(
            "SELECT * FROM poll_runs ORDER BY started_at DESC LIMIT %s", (limit,)
        )
        return [self._row_to_poll_run(row) for row in rows]

    # Row mapping

    def _row_to_estimate(self, row: dict[str, Any]) -> Estimate:
        raw_data = row.get("raw_data") or {}
        if isinstance(raw_data, str):
            raw_data = json.loads(raw_data)
        return Estimate(
            estimate_id=row["estimate_id"],
            salesperson=row["salesperson"],
            customer_name=row["customer_name"],
            amount=float(row["amount"]),
            sold_at=_utc(row["sold_at"]),
            option_name=row["option_name"],
            is_tgl=bool(row["is_tgl"]),
            is_big_sale=bool(row["is_big_sale"]),
            raw_data=raw_data,
            poll_run_id=row.get("poll_run_id"),
            processed_at=_utc(row.get("processed_at")),
        )

    def _row_to_claim(self, row: dict[str, Any]) -> DeliveryClaim:
        return DeliveryClaim(
            estimate_id=row["estimate_id"],
            celebration_type=CelebrationType(row["celebration_type"]),
            channel_id=row["channel_id"],
            status=ClaimStatus(row["status"]),
            created_at=_utc(row.get("created_at")),
            updated_at=_utc(row.get("updated_at")),
            error_message=row.get("error_message"),
            message_text=row.get("message_text"),
            gif_url=row.get("gif_url"),
        )

    def _row_to_content(self, row: dict[str, Any]) -> ContentItem:
        return ContentItem(
            content_id=row["content_id"],
            kind=ContentKind(row["kind"]),
            body=row["body"],
            category=CelebrationType(row["category"]),
            assigned_to=row.get("assigned_to"),
            is_active=bool(row["is_active"]),
            last_used_at=_utc(row.get("last_used_at")),
            last_used_for=row.get("last_used_for"),
            use_count=row.get("use_count") or 0,
            paired_gif_id=row.get("paired_gif_id"),
        )

    def _row_to_channel(self, row: dict[str, Any]) -> Channel:
        tags = row.get("tags") or []
        if isinstance(tags, str):
            tags = json.loads(tags)
        return Channel(
            channel_id=row["channel_id"],
            name=row.get("name") or "",
            url=row["url"],
            kind=ChannelKind(row["kind"]),
            tags=[CelebrationType(tag) for tag in tags],
            is_active=bool(row["is_active"]),
        )

    def _row_to_poll_run(self, row: dict[str, Any]) -> PollRun:
        return PollRun(
            run_id=row["run_id"],
            variant=PollVariant(row["variant"]),
            status=PollStatus(row["status"]),
            started_at=_utc(row["started_at"]),
            window_from=_utc(row.get("window_from")),
            window_to=_utc(row.get("window_to")),
            events_found=row["events_found"],
            events_processed=row["events_processed"],
            events_skipped=row["events_skipped"],
            celebrations_sent=row["celebrations_sent"],
            duration_ms=row["duration_ms"],
            error_message=row.get("error_message"),
        )
