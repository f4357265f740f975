"""Tests for the persist-only backfill."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
import pytz

from src.config.settings import Settings
from src.domain.models import PollVariant
from src.domain.protocols import RepositoryProtocol
from src.use_cases.backfill_estimates import backfill_estimates_use_case
from src.use_cases.poll_sales import Poller
from tests.conftest import FakeEventSource, FrozenClock, RecordingSender, make_event

START = datetime(2026, 2, 1, tzinfo=pytz.UTC)
END = datetime(2026, 3, 1, tzinfo=pytz.UTC)


@pytest.fixture
def history(source: FakeEventSource) -> FakeEventSource:
    source.events = [
        make_event("B0", amount=900.0, sold_at=START - timedelta(seconds=1)),
        make_event("B1", amount=900.0, sold_at=START),
        make_event("B2", amount=0.0, name="Option C - System Update", sold_at=START + timedelta(days=3)),
        make_event("B3", amount=50.0, sold_at=END - timedelta(seconds=1)),
        make_event("B4", amount=50.0, sold_at=END),
    ]
    return source


@pytest.mark.usefixtures("channels")
def test_backfill_persists_window_without_celebrating(
    repo: RepositoryProtocol,
    settings: Settings,
    history: FakeEventSource,
    sender: RecordingSender,
) -> None:
    sleeps: list[float] = []

    result = backfill_estimates_use_case(
        history, repo, settings, START, END, sleep=sleeps.append
    )

    assert result.events_found == 3
    assert result.inserted == 3
    assert result.already_present == 0
    assert result.errors == []
    assert [repo.estimate_exists(eid) for eid in ("B0", "B1", "B2", "B3", "B4")] == [
        False,
        True,
        True,
        True,
        False,
    ]
    backfilled = repo.get_estimate("B2")
    assert backfilled is not None
    assert backfilled.poll_run_id is None
    assert backfilled.is_tgl is True
    assert repo.list_claims() == []
    assert sender.sent == []
    assert sleeps.count(settings.enrichment_delay_seconds) == 6


@pytest.mark.usefixtures("channels")
def test_backfilled_estimates_are_never_celebrated(
    repo: RepositoryProtocol,
    settings: Settings,
    history: FakeEventSource,
    sender: RecordingSender,
) -> None:
    backfill_estimates_use_case(history, repo, settings, START, END, sleep=lambda _: None)
    clock = FrozenClock(START + timedelta(days=3, minutes=10))

    result = Poller(
        history, repo, sender, settings, clock=clock, sleep=lambda _: None
    ).run(PollVariant.CATCHUP)

    assert result.estimates_skipped == 2
    assert sender.sent == []


def test_backfill_is_rerunnable(
    repo: RepositoryProtocol, settings: Settings, history: FakeEventSource
) -> None:
    backfill_estimates_use_case(history, repo, settings, START, END, sleep=lambda _: None)

    again = backfill_estimates_use_case(
        history, repo, settings, START, END, sleep=lambda _: None
    )

    assert again.inserted == 0
    assert again.already_present == 3


def test_backfill_records_per_event_errors(
    repo: RepositoryProtocol, settings: Settings, history: FakeEventSource
) -> None:
    history.failing_customer_ids = {"C1"}

    result = backfill_estimates_use_case(
        history, repo, settings, START, END, sleep=lambda _: None
    )

    assert result.inserted == 0
    assert len(result.errors) == 3


def test_backfill_rejects_empty_range(
    repo: RepositoryProtocol, settings: Settings, history: FakeEventSource
) -> None:
    with pytest.raises(ValueError):
        backfill_estimates_use_case(history, repo, settings, END, START)
