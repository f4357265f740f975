"""Tests for the HTTP poll triggers."""

from collections.abc import Generator
from datetime import datetime, timedelta

import pytest
import pytz
from fastapi.testclient import TestClient

from src.config.settings import Settings
from src.domain.exceptions import ConfigurationError
from src.domain.models import CelebrationType, Channel, DeliveryClaim
from src.domain.protocols import RepositoryProtocol
from src.presentation.api import PollerRuntime, app, get_runtime
from tests.conftest import FakeEventSource, RecordingSender, make_event


@pytest.fixture
def runtime(
    settings: Settings,
    repo: RepositoryProtocol,
    source: FakeEventSource,
    sender: RecordingSender,
) -> PollerRuntime:
    return PollerRuntime(
        settings=settings,
        repository=repo,
        source=source,
        sender=sender,
        sleep=lambda _: None,
    )


@pytest.fixture
def client(runtime: PollerRuntime) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_runtime] = lambda: runtime
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_regular_poll_celebrates(
    client: TestClient,
    source: FakeEventSource,
    sender: RecordingSender,
    channels: list[Channel],
) -> None:
    source.events = [
        make_event("E9", amount=2500.0, sold_at=datetime.now(tz=pytz.UTC) - timedelta(minutes=2))
    ]

    response = client.post("/poll/regular")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["variant"] == "regular"
    assert body["estimatesFound"] == 1
    assert body["estimatesProcessed"] == 1
    assert body["celebrationsSent"] == 2
    assert len(sender.sent) == 2


def test_upstream_failure_returns_500(
    client: TestClient, source: FakeEventSource
) -> None:
    source.fail_fetch = True

    response = client.post("/poll/catchup")

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert "feed unavailable" in body["errors"][0]


def test_unknown_variant_rejected(client: TestClient) -> None:
    response = client.post("/poll/weekly")

    assert response.status_code == 422


def test_stale_claims_report(client: TestClient, repo: RepositoryProtocol) -> None:
    now = datetime.now(tz=pytz.UTC)
    repo.insert_claim(
        DeliveryClaim(
            estimate_id="E1",
            celebration_type=CelebrationType.TGL,
            channel_id="ch-all",
            created_at=now - timedelta(hours=2),
        )
    )
    repo.insert_claim(
        DeliveryClaim(
            estimate_id="E2",
            celebration_type=CelebrationType.TGL,
            channel_id="ch-all",
            created_at=now - timedelta(minutes=1),
        )
    )

    response = client.get("/claims/stale", params={"older_than_minutes": 30})

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["claims"][0]["estimate_id"] == "E1"
    assert body["claims"][0]["status"] == "pending"


def test_configuration_error_returns_500() -> None:
    def _broken_runtime() -> PollerRuntime:
        raise ConfigurationError("POSTGRES_PASSWORD environment variable must be set")

    app.dependency_overrides[get_runtime] = _broken_runtime
    try:
        response = TestClient(app).post("/poll/manual")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "POSTGRES_PASSWORD environment variable must be set",
    }
