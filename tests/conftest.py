"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Generator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytz

from src.adapters.repository_factory import create_repository, create_watermark_store
from src.adapters.watermark_store import WatermarkStore
from src.config.settings import CONFIG_DIR_ENV, Settings
from src.domain.exceptions import UpstreamFetchError
from src.domain.models import (
    CelebrationType,
    Channel,
    ChannelKind,
    ContentItem,
    ContentKind,
    DispatchOutcome,
    LineItem,
    SaleEvent,
)
from src.domain.protocols import RepositoryProtocol

FIXED_NOW = datetime(2026, 3, 2, 15, 0, tzinfo=pytz.UTC)

POSTGRES_TABLES = (
    "poll_watermarks",
    "poll_runs",
    "salespeople",
    "channels",
    "content_items",
    "delivery_claims",
    "estimates",
    "alembic_version",
)


class FrozenClock:
    """Deterministic UTC clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEventSource:
    """In-memory sales feed implementing EventSourceProtocol."""

    def __init__(self, events: list[SaleEvent] | None = None) -> None:
        self.events: list[SaleEvent] = list(events or [])
        self.technicians: dict[str, str] = {}
        self.customers: dict[str, str] = {}
        self.fetch_calls: list[datetime] = []
        self.lookups: list[tuple[str, str | None]] = []
        self.fail_fetch = False
        self.failing_customer_ids: set[str] = set()

    def fetch_sold_events(self, since: datetime) -> list[SaleEvent]:
        self.fetch_calls.append(since)
        if self.fail_fetch:
            raise UpstreamFetchError("feed unavailable", status_code=503)
        selected = [event for event in self.events if event.sold_at >= since]
        return sorted(selected, key=lambda event: (event.sold_at, event.external_id))

    def get_technician_name(self, technician_id: str | None) -> str:
        self.lookups.append(("technician", technician_id))
        if not technician_id:
            return "Unknown"
        return self.technicians.get(technician_id, "Unknown")

    def get_customer_name(self, customer_id: str | None) -> str:
        self.lookups.append(("customer", customer_id))
        if customer_id in self.failing_customer_ids:
            raise UpstreamFetchError(f"customer {customer_id} lookup failed")
        if not customer_id:
            return "Unknown"
        return self.customers.get(customer_id, "Unknown")


class RecordingSender:
    """ChannelSenderProtocol fake that records every delivery."""

    def __init__(self, failing_channels: set[str] | None = None) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.failing_channels = failing_channels or set()

    def send(self, message: str, gif_url: str, channel: Channel) -> DispatchOutcome:
        self.sent.append((channel.channel_id, message, gif_url))
        if channel.channel_id in self.failing_channels:
            return DispatchOutcome(success=False, status_code=500, error="HTTP 500: boom")
        return DispatchOutcome(success=True, status_code=200)

    def sent_to(self, channel_id: str) -> list[tuple[str, str, str]]:
        return [entry for entry in self.sent if entry[0] == channel_id]


def make_event(
    external_id: str,
    *,
    sold_at: datetime | None = None,
    amount: float = 0.0,
    name: str = "",
    seller_id: str | None = "T1",
    customer_id: str | None = "C1",
    line_items: tuple[LineItem, ...] = (),
) -> SaleEvent:
    """Build a SaleEvent with sensible defaults."""
    return SaleEvent(
        external_id=external_id,
        sold_at=sold_at or FIXED_NOW - timedelta(minutes=5),
        seller_id=seller_id,
        customer_id=customer_id,
        amount=amount,
        line_items=line_items,
        name=name,
        raw={"id": external_id, "subtotal": amount},
    )


def make_content(
    content_id: str,
    *,
    kind: ContentKind = ContentKind.MESSAGE,
    body: str = "{name} did it!",
    category: CelebrationType = CelebrationType.BIG_SALE,
    **kwargs: Any,
) -> ContentItem:
    """Build a ContentItem with sensible defaults."""
    return ContentItem(
        content_id=content_id, kind=kind, body=body, category=category, **kwargs
    )


@pytest.fixture(autouse=True)
def isolated_config_dir(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Path:
    """Point config loading at an empty directory unless a test provides one."""
    config_dir = tmp_path_factory.mktemp("config")
    monkeypatch.setenv(CONFIG_DIR_ENV, str(config_dir))
    return config_dir


@pytest.fixture
def settings(
    tmp_path_factory: pytest.TempPathFactory, request: pytest.FixtureRequest
) -> Settings:
    """Create settings configured for the requested database backend."""

    base_settings = Settings(
        servicetitan_client_id="client-id",
        servicetitan_client_secret="client-secret",
        servicetitan_app_key="app-key",
        servicetitan_tenant_id="42",
        enrichment_delay_seconds=0.5,
        batch_pause_seconds=3.0,
        processing_batch_size=10,
    )

    backend = "sqlite"
    if hasattr(request.node, "callspec"):
        backend = request.node.callspec.params.get("repo", backend)

    if request.node.get_closest_marker("postgres"):
        backend = "postgres"

    if backend == "postgres":
        if os.environ.get("TEST_POSTGRES", "0") != "1":
            pytest.skip("PostgreSQL tests disabled (TEST_POSTGRES!=1)")
        if not os.environ.get("POSTGRES_PASSWORD"):
            pytest.skip("POSTGRES_PASSWORD not set for PostgreSQL tests")
        return base_settings.model_copy(update={"database_type": "postgres"})

    temp_dir = tmp_path_factory.mktemp("db")
    db_path = temp_dir / "test.sqlite"
    return base_settings.model_copy(
        update={"database_type": "sqlite", "db_path": str(db_path)}
    )


def _reset_postgres_schema(repository: RepositoryProtocol) -> None:
    with repository.connection() as conn:
        with conn.cursor() as cur:
            for table in POSTGRES_TABLES:
                cur.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
        conn.commit()


@pytest.fixture
def repo(settings: Settings) -> Generator[RepositoryProtocol, None, None]:
    """Provide a repository instance for the configured backend."""

    repository = create_repository(settings)
    if settings.database_type == "postgres":
        _reset_postgres_schema(repository)
        subprocess.run(["alembic", "upgrade", "head"], check=True, capture_output=True)

    try:
        yield repository
    finally:
        if settings.database_type == "postgres":
            _reset_postgres_schema(repository)
        repository.close()


@pytest.fixture
def watermarks(repo: RepositoryProtocol) -> WatermarkStore:
    return create_watermark_store(repo)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def source() -> FakeEventSource:
    feed = FakeEventSource()
    feed.technicians = {"T1": "Alice Smith", "T2": "Bob Jones"}
    feed.customers = {"C1": "Doe, Jane", "C2": "Acme Plumbing"}
    return feed


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def sleeps() -> list[float]:
    """Collects pacing sleeps instead of sleeping."""
    return []


@pytest.fixture
def channels(repo: RepositoryProtocol) -> list[Channel]:
    """Two big-sale channels and one TGL channel."""
    seeded = [
        Channel(
            channel_id="ch-sales",
            name="sales",
            url="https://chat.example.com/v1/spaces/AAA/messages?key=k",
            kind=ChannelKind.GOOGLE_CHAT,
            tags=[CelebrationType.BIG_SALE],
        ),
        Channel(
            channel_id="ch-all",
            name="team",
            url="https://hooks.slack.com/services/T0/B0/xyz",
            kind=ChannelKind.SLACK,
            tags=[CelebrationType.BIG_SALE, CelebrationType.TGL],
        ),
        Channel(
            channel_id="ch-off",
            name="retired",
            url="https://chat.example.com/v1/spaces/OFF/messages",
            tags=[CelebrationType.BIG_SALE, CelebrationType.TGL],
            is_active=False,
        ),
    ]
    repo.save_channels(seeded)
    return seeded
