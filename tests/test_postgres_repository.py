"""Tests for PostgreSQL repository.

These tests are skipped unless:
- POSTGRES_PASSWORD environment variable is set
- TEST_POSTGRES=1 environment variable is set
- PostgreSQL is running on localhost:5432

Run with: TEST_POSTGRES=1 POSTGRES_PASSWORD=password pytest tests/test_postgres_repository.py
"""

from datetime import timedelta

import pytest

from src.adapters.watermark_store import WatermarkStore
from src.config.settings import Settings
from src.domain.models import (
    CelebrationType,
    Channel,
    ClaimResult,
    ClaimStatus,
    ContentKind,
    DeliveryClaim,
    Estimate,
    PollVariant,
)
from src.domain.polling_constants import PRIMARY_WATERMARK_KEY
from src.domain.protocols import RepositoryProtocol
from src.use_cases.poll_sales import Poller
from tests.conftest import (
    FIXED_NOW,
    FakeEventSource,
    FrozenClock,
    RecordingSender,
    make_content,
    make_event,
)

pytestmark = pytest.mark.postgres


def _estimate(estimate_id: str = "E1") -> Estimate:
    return Estimate(
        estimate_id=estimate_id,
        salesperson="Alice Smith",
        customer_name="Jane Doe",
        amount=1234.5,
        sold_at=FIXED_NOW - timedelta(minutes=3),
        is_big_sale=True,
        raw_data={"id": estimate_id, "soldOn": "2026-03-02T14:57:00Z"},
    )


def test_postgres_estimate_inserted_once(repo: RepositoryProtocol) -> None:
    assert repo.insert_estimate(_estimate()) is True
    assert repo.insert_estimate(_estimate()) is False

    stored = repo.get_estimate("E1")
    assert stored is not None
    assert stored.amount == pytest.approx(1234.5)
    assert stored.raw_data == {"id": "E1", "soldOn": "2026-03-02T14:57:00Z"}
    assert stored.sold_at == FIXED_NOW - timedelta(minutes=3)


def test_postgres_claim_unique_key(repo: RepositoryProtocol) -> None:
    claim = DeliveryClaim(
        estimate_id="E1",
        celebration_type=CelebrationType.BIG_SALE,
        channel_id="ch-sales",
    )

    assert repo.insert_claim(claim) is ClaimResult.INSERTED
    assert repo.insert_claim(claim) is ClaimResult.ALREADY_CLAIMED
    assert (
        repo.insert_claim(claim.model_copy(update={"channel_id": "ch-all"}))
        is ClaimResult.INSERTED
    )

    repo.update_claim(
        "E1",
        CelebrationType.BIG_SALE,
        "ch-sales",
        status=ClaimStatus.SUCCESS,
        message_text="Alice closed it",
    )
    claims = repo.list_claims(estimate_id="E1", statuses=[ClaimStatus.SUCCESS])
    assert [(c.channel_id, c.message_text) for c in claims] == [
        ("ch-sales", "Alice closed it")
    ]


def test_postgres_watermark_store(watermarks: WatermarkStore) -> None:
    assert watermarks.get(PRIMARY_WATERMARK_KEY).last_poll_timestamp is None

    watermarks.advance(PRIMARY_WATERMARK_KEY, FIXED_NOW)
    watermarks.advance(PRIMARY_WATERMARK_KEY, FIXED_NOW - timedelta(hours=1))
    watermarks.remember_ids(PRIMARY_WATERMARK_KEY, ["E2", "E1"], cache_size=3)
    watermarks.remember_ids(PRIMARY_WATERMARK_KEY, ["E4", "E3"], cache_size=3)

    state = watermarks.get(PRIMARY_WATERMARK_KEY)
    assert state.last_poll_timestamp == FIXED_NOW
    assert state.recent_ids == ["E4", "E3", "E2"]


def test_postgres_channel_and_content_queries(repo: RepositoryProtocol) -> None:
    repo.save_channels(
        [
            Channel(
                channel_id="ch-tgl",
                name="leads",
                url="https://chat.example.com/tgl",
                tags=[CelebrationType.TGL],
            ),
            Channel(
                channel_id="ch-big",
                name="sales",
                url="https://chat.example.com/big",
                tags=[CelebrationType.BIG_SALE],
            ),
        ]
    )
    repo.save_content_items([make_content("m1"), make_content("m2", is_active=False)])

    assert [c.channel_id for c in repo.get_active_channels(CelebrationType.TGL)] == [
        "ch-tgl"
    ]
    active = repo.get_active_content(
        ContentKind.MESSAGE, CelebrationType.BIG_SALE, assigned_to=None
    )
    assert [c.content_id for c in active] == ["m1"]

    repo.record_content_usage("m1", used_for="Alice Smith", used_at=FIXED_NOW)
    used = repo.get_content_item("m1")
    assert used is not None
    assert used.use_count == 1
    assert used.last_used_at == FIXED_NOW


def test_postgres_poll_end_to_end(
    repo: RepositoryProtocol,
    settings: Settings,
    channels: list[Channel],
    source: FakeEventSource,
    sender: RecordingSender,
) -> None:
    source.events = [make_event("E1", amount=1500.0)]
    poller = Poller(
        source, repo, sender, settings, clock=FrozenClock(), sleep=lambda _: None
    )

    first = poller.run(PollVariant.REGULAR)
    second = poller.run(PollVariant.CATCHUP)

    assert first.celebrations_sent == 2
    assert second.estimates_skipped == 1
    assert len(sender.sent) == 2
    assert len(repo.get_recent_poll_runs()) == 2
