"""Overlapping poller runs against one SQLite file.

The unique indexes are the only synchronization: however many runs race on
the same estimate, each (estimate, type, channel) is delivered at most once.
"""

from __future__ import annotations

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from src.adapters.sqlite_repository import SQLiteRepository
from src.config.settings import Settings
from src.domain.models import (
    CelebrationType,
    Channel,
    ClaimResult,
    ClaimStatus,
    PollResult,
    PollVariant,
)
from src.services.content_selector import ContentSelector
from src.services.dedup_ledger import DedupLedger
from src.use_cases.poll_sales import Poller
from tests.conftest import FakeEventSource, FrozenClock, RecordingSender, make_event

WORKERS = 8


@pytest.fixture
def shared_db(tmp_path: Path) -> str:
    db_path = str(tmp_path / "shared.sqlite")
    repository = SQLiteRepository(db_path=db_path)
    repository.save_channels(
        [
            Channel(
                channel_id="ch-sales",
                name="sales",
                url="https://chat.example.com/a",
                tags=[CelebrationType.BIG_SALE, CelebrationType.TGL],
            ),
            Channel(
                channel_id="ch-leads",
                name="leads",
                url="https://chat.example.com/b",
                tags=[CelebrationType.TGL],
            ),
        ]
    )
    return db_path


def test_concurrent_claims_have_single_winner(shared_db: str) -> None:
    barrier = threading.Barrier(WORKERS)

    def _claim(_: int) -> ClaimResult:
        ledger = DedupLedger(SQLiteRepository(db_path=shared_db))
        barrier.wait()
        return ledger.claim("E1", CelebrationType.BIG_SALE, "ch-sales")

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        results = list(pool.map(_claim, range(WORKERS)))

    assert results.count(ClaimResult.INSERTED) == 1
    assert results.count(ClaimResult.ALREADY_CLAIMED) == WORKERS - 1


def test_overlapping_pollers_deliver_at_most_once(
    shared_db: str, settings: Settings
) -> None:
    source = FakeEventSource(
        [
            make_event("E1", amount=4000.0, name="Option C - System Update"),
            make_event("E2", amount=950.0, customer_id="C2"),
            make_event("E3", amount=10.0),
        ]
    )
    source.technicians = {"T1": "Alice Smith"}
    sender = RecordingSender()
    clock = FrozenClock()
    variants = [PollVariant.REGULAR, PollVariant.MANUAL, PollVariant.CATCHUP] * 3
    barrier = threading.Barrier(len(variants))

    def _poll(variant: PollVariant) -> PollResult:
        repository = SQLiteRepository(db_path=shared_db)
        poller = Poller(
            source,
            repository,
            sender,
            settings,
            selector=ContentSelector(repository, rng=random.Random(), clock=clock),
            clock=clock,
            sleep=lambda _: None,
        )
        barrier.wait()
        return poller.run(variant)

    with ThreadPoolExecutor(max_workers=len(variants)) as pool:
        results = list(pool.map(_poll, variants))

    assert all(result.success for result in results)
    assert all(result.errors == [] for result in results)

    deliveries = [(channel_id, text) for channel_id, text, _ in sender.sent]
    # E1: TGL → ch-sales + ch-leads, big sale → ch-sales; E2: big sale → ch-sales
    assert len(deliveries) == 4
    assert sum(result.celebrations_sent for result in results) == 4

    repository = SQLiteRepository(db_path=shared_db)
    claims = repository.list_claims()
    keys = {(c.estimate_id, c.celebration_type, c.channel_id) for c in claims}
    assert len(keys) == len(claims) == 4
    assert {claim.status for claim in claims} == {ClaimStatus.SUCCESS}
    assert sum(result.estimates_processed for result in results) == 3
