"""Backfill estimates use case.

Persists historical sold estimates for reporting without celebrating them.
Backfilled rows carry ``poll_run_id=None``; because an Estimate row exists,
pollers skip these ids afterwards.
"""

import time
from collections.abc import Callable
from datetime import datetime

import pytz

from src.adapters.query_builders import ensure_utc
from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.exceptions import CelebrationBotError, StoreUnavailableError
from src.domain.models import BackfillResult, Estimate
from src.domain.protocols import EventSourceProtocol, RepositoryProtocol
from src.services.classifier import classify
from src.services.message_formatter import format_customer_name

logger = get_logger(__name__)


def backfill_estimates_use_case(
    source: EventSourceProtocol,
    repository: RepositoryProtocol,
    settings: Settings,
    start: datetime,
    end: datetime,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> BackfillResult:
    """Persist estimates sold in ``[start, end)`` without celebrating.

    Args:
        source: Sales feed
        repository: Persistence backend
        settings: Application settings (classification rules, pacing)
        start: Inclusive lower bound
        end: Exclusive upper bound
        sleep: Pacing sleep function

    Returns:
        BackfillResult with counts and per-event errors

    Raises:
        ValueError: If ``end`` is not after ``start``
        UpstreamFetchError: If the window fetch fails
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    if end <= start:
        raise ValueError("end must be after start")

    rules = settings.classification_rules()
    events = [event for event in source.fetch_sold_events(start) if event.sold_at < end]
    result = BackfillResult(events_found=len(events))
    logger.info(
        "backfill_started",
        start=start.isoformat(),
        end=end.isoformat(),
        events_found=len(events),
    )

    enriched = 0
    for event in events:
        try:
            if repository.estimate_exists(event.external_id):
                result.already_present += 1
                continue

            seller_name = source.get_technician_name(event.seller_id)
            sleep(settings.enrichment_delay_seconds)
            customer_name = format_customer_name(
                source.get_customer_name(event.customer_id)
            )
            sleep(settings.enrichment_delay_seconds)
            enriched += 1
            if enriched % settings.processing_batch_size == 0:
                sleep(settings.batch_pause_seconds)

            classification = classify(event, rules)
            inserted = repository.insert_estimate(
                Estimate(
                    estimate_id=event.external_id,
                    salesperson=seller_name,
                    customer_name=customer_name,
                    amount=event.amount,
                    sold_at=event.sold_at,
                    option_name=classification.matched_marker,
                    is_tgl=classification.is_tgl,
                    is_big_sale=classification.is_big_sale,
                    raw_data=event.raw,
                    poll_run_id=None,
                    processed_at=datetime.now(tz=pytz.UTC),
                )
            )
        except StoreUnavailableError:
            raise
        except CelebrationBotError as e:
            logger.error("backfill_event_failed", estimate_id=event.external_id, error=str(e))
            if len(result.errors) < settings.max_run_errors:
                result.errors.append(f"Estimate {event.external_id}: {e}")
            continue

        if inserted:
            result.inserted += 1
        else:
            result.already_present += 1

    logger.info(
        "backfill_completed",
        events_found=result.events_found,
        inserted=result.inserted,
        already_present=result.already_present,
        errors=len(result.errors),
    )
    return result
