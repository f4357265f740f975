"""Poll sales use case.

One poller type serves the three schedules that read the sales feed:

- regular: fast schedule, window starts ``lookback_buffer_minutes`` behind
  the primary watermark and advances it on success
- manual: on-demand trigger with the regular semantics
- catchup: wide ``catchup_lookback_hours`` window for late-visible estimates;
  never touches the primary watermark and relies on fresh per-event checks

Runs may overlap freely. The only synchronization is the storage unique
constraint on estimates and delivery claims.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Final, cast

import pytz

from src.adapters.watermark_store import GetConnectionCallable, WatermarkStore
from src.config.logging_config import get_logger
from src.config.settings import Settings
from src.domain.exceptions import (
    CelebrationBotError,
    RepositoryError,
    StoreUnavailableError,
    UpstreamFetchError,
)
from src.domain.models import (
    Estimate,
    PollResult,
    PollRun,
    PollStatus,
    PollVariant,
    SaleEvent,
)
from src.domain.polling_constants import PRIMARY_WATERMARK_KEY
from src.domain.protocols import (
    ChannelSenderProtocol,
    EventSourceProtocol,
    RepositoryProtocol,
)
from src.observability.metrics import (
    POLL_EVENTS_TOTAL,
    POLL_RUN_DURATION_SECONDS,
    POLL_RUNS_TOTAL,
)
from src.observability.tracing import correlation_scope
from src.services.classifier import classify
from src.services.content_selector import ContentSelector
from src.services.dedup_ledger import DedupLedger
from src.services.message_formatter import format_customer_name
from src.use_cases.deliver_celebration import deliver_celebration_use_case

logger = get_logger(__name__)

OUTCOME_PROCESSED: Final[str] = "processed"
OUTCOME_SKIPPED: Final[str] = "skipped"
OUTCOME_FAILED: Final[str] = "failed"


@dataclass(frozen=True)
class PollStrategy:
    """Window and watermark policy of a poller variant."""

    variant: PollVariant
    uses_watermark: bool
    uses_recent_cache: bool

    def window_start(
        self, now: datetime, last_poll_timestamp: datetime | None, settings: Settings
    ) -> datetime:
        """Lower bound of the fetch window (the upper bound is ``now``)."""
        if not self.uses_watermark:
            return now - timedelta(hours=settings.catchup_lookback_hours)
        anchor = last_poll_timestamp or now
        return anchor - timedelta(minutes=settings.lookback_buffer_minutes)


POLL_STRATEGIES: Final[dict[PollVariant, PollStrategy]] = {
    PollVariant.REGULAR: PollStrategy(
        PollVariant.REGULAR, uses_watermark=True, uses_recent_cache=True
    ),
    PollVariant.MANUAL: PollStrategy(
        PollVariant.MANUAL, uses_watermark=True, uses_recent_cache=True
    ),
    PollVariant.CATCHUP: PollStrategy(
        PollVariant.CATCHUP, uses_watermark=False, uses_recent_cache=False
    ),
}


@dataclass
class _RunState:
    run: PollRun
    recent_ids: set[str]
    handled_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    enriched_events: int = 0


class Poller:
    """Fetches sold estimates, persists them and celebrates qualifying ones."""

    def __init__(
        self,
        source: EventSourceProtocol,
        repository: RepositoryProtocol,
        sender: ChannelSenderProtocol,
        settings: Settings,
        *,
        watermarks: WatermarkStore | None = None,
        selector: ContentSelector | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize poller.

        Args:
            source: Sales feed
            repository: Persistence backend
            sender: Chat webhook sender
            settings: Application settings
            watermarks: Watermark store (defaults to the repository's connections)
            selector: Content selector (defaults to an unseeded selector)
            clock: UTC clock
            sleep: Pacing sleep function (no-op in tests)
        """
        self._source = source
        self._repository = repository
        self._sender = sender
        self._settings = settings
        self._watermarks = watermarks or WatermarkStore(
            cast(GetConnectionCallable, repository.connection)
        )
        self._clock = clock or (lambda: datetime.now(tz=pytz.UTC))
        self._selector = selector or ContentSelector(
            repository,
            clock=self._clock,
            cooldown_hours=settings.content_cooldown_hours,
        )
        self._ledger = DedupLedger(repository)
        self._sleep = sleep
        self._rules = settings.classification_rules()

    def run(self, variant: PollVariant) -> PollResult:
        """Execute one poll.

        Never raises for feed or storage failures: they are reported on the
        result and recorded on the PollRun row.
        """
        strategy = POLL_STRATEGIES[PollVariant(variant)]
        run = PollRun(variant=strategy.variant, started_at=self._clock())
        started = time.monotonic()

        with correlation_scope(run.run_id, variant=run.variant.value):
            if not self._settings.polling_enabled:
                return self._skip(run, started)

            try:
                return self._execute(strategy, run, started)
            except (UpstreamFetchError, RepositoryError) as e:
                return self._fail(run, e, started)

    def _skip(self, run: PollRun, started: float) -> PollResult:
        run.status = PollStatus.SKIPPED
        run.error_message = "Polling is disabled"
        run.duration_ms = _elapsed_ms(started)
        try:
            self._repository.create_poll_run(run)
        except RepositoryError as e:
            logger.warning("poll_run_record_failed", error=str(e))

        logger.info("poll_run_skipped", variant=run.variant.value, reason="disabled")
        POLL_RUNS_TOTAL.labels(variant=run.variant.value, status=run.status.value).inc()
        return PollResult(
            run_id=run.run_id,
            variant=run.variant,
            success=True,
            skipped=True,
            duration_ms=run.duration_ms,
        )

    def _fail(self, run: PollRun, error: Exception, started: float) -> PollResult:
        run.status = PollStatus.ERROR
        run.error_message = str(error)
        run.duration_ms = _elapsed_ms(started)
        logger.error(
            "poll_run_failed",
            variant=run.variant.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        try:
            self._repository.update_poll_run(run)
        except RepositoryError as e:
            logger.warning("poll_run_record_failed", error=str(e))

        self._observe(run)
        return PollResult(
            run_id=run.run_id,
            variant=run.variant,
            success=False,
            estimates_found=run.events_found,
            estimates_processed=run.events_processed,
            estimates_skipped=run.events_skipped,
            celebrations_sent=run.celebrations_sent,
            duration_ms=run.duration_ms,
            errors=[str(error)],
        )

    def _execute(
        self, strategy: PollStrategy, run: PollRun, started: float
    ) -> PollResult:
        settings = self._settings
        now = run.started_at
        run.window_to = now
        self._repository.create_poll_run(run)

        watermark = None
        if strategy.uses_watermark or strategy.uses_recent_cache:
            watermark = self._watermarks.get(PRIMARY_WATERMARK_KEY)

        last_poll = (
            watermark.last_poll_timestamp
            if watermark is not None and strategy.uses_watermark
            else None
        )
        run.window_from = strategy.window_start(now, last_poll, settings)

        logger.info(
            "poll_run_started",
            variant=run.variant.value,
            window_from=run.window_from.isoformat(),
            window_to=run.window_to.isoformat(),
        )

        events = self._source.fetch_sold_events(run.window_from)
        run.events_found = len(events)

        recent_ids = (
            set(watermark.recent_ids)
            if watermark is not None and strategy.uses_recent_cache
            else set()
        )
        state = _RunState(run=run, recent_ids=recent_ids)
        for event in events:
            self._handle_event(event, state)

        if strategy.uses_recent_cache and state.handled_ids:
            self._watermarks.remember_ids(
                PRIMARY_WATERMARK_KEY,
                reversed(state.handled_ids),
                settings.recent_ids_cache_size,
            )
        if strategy.uses_watermark:
            self._watermarks.advance(PRIMARY_WATERMARK_KEY, run.window_to)

        run.status = PollStatus.SUCCESS
        run.duration_ms = _elapsed_ms(started)
        if state.errors:
            run.error_message = "; ".join(state.errors)
        self._repository.update_poll_run(run)
        self._observe(run)

        logger.info(
            "poll_run_completed",
            variant=run.variant.value,
            events_found=run.events_found,
            events_processed=run.events_processed,
            events_skipped=run.events_skipped,
            celebrations_sent=run.celebrations_sent,
            errors=len(state.errors),
            duration_ms=run.duration_ms,
        )
        return PollResult(
            run_id=run.run_id,
            variant=run.variant,
            success=True,
            estimates_found=run.events_found,
            estimates_processed=run.events_processed,
            estimates_skipped=run.events_skipped,
            celebrations_sent=run.celebrations_sent,
            duration_ms=run.duration_ms,
            errors=state.errors,
        )

    def _handle_event(self, event: SaleEvent, state: _RunState) -> None:
        variant = state.run.variant.value
        try:
            outcome = self._process_event(event, state)
        except StoreUnavailableError:
            raise
        except CelebrationBotError as e:
            logger.error(
                "poll_event_failed",
                estimate_id=event.external_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._record_event_error(event, state, str(e))
            return
        except Exception as e:
            logger.exception(
                "poll_event_crashed",
                estimate_id=event.external_id,
                error_type=type(e).__name__,
            )
            self._record_event_error(event, state, f"{type(e).__name__}: {e}")
            return

        if outcome == OUTCOME_PROCESSED:
            state.run.events_processed += 1
        else:
            state.run.events_skipped += 1
        state.handled_ids.append(event.external_id)
        POLL_EVENTS_TOTAL.labels(variant=variant, outcome=outcome).inc()

    def _record_event_error(self, event: SaleEvent, state: _RunState, message: str) -> None:
        POLL_EVENTS_TOTAL.labels(
            variant=state.run.variant.value, outcome=OUTCOME_FAILED
        ).inc()
        if len(state.errors) < self._settings.max_run_errors:
            state.errors.append(f"Estimate {event.external_id}: {message}")

    def _process_event(self, event: SaleEvent, state: _RunState) -> str:
        estimate_id = event.external_id

        if estimate_id in state.recent_ids:
            logger.debug("poll_event_skipped", estimate_id=estimate_id, reason="recent")
            return OUTCOME_SKIPPED
        if self._repository.estimate_exists(estimate_id):
            logger.debug("poll_event_skipped", estimate_id=estimate_id, reason="exists")
            return OUTCOME_SKIPPED
        if self._ledger.has_been_claimed(estimate_id):
            logger.debug("poll_event_skipped", estimate_id=estimate_id, reason="claimed")
            return OUTCOME_SKIPPED

        seller_name = self._enrich(self._source.get_technician_name, event.seller_id)
        customer_name = format_customer_name(
            self._enrich(self._source.get_customer_name, event.customer_id)
        )
        state.enriched_events += 1
        if state.enriched_events % self._settings.processing_batch_size == 0:
            self._sleep(self._settings.batch_pause_seconds)

        classification = classify(event, self._rules)
        estimate = Estimate(
            estimate_id=estimate_id,
            salesperson=seller_name,
            customer_name=customer_name,
            amount=event.amount,
            sold_at=event.sold_at,
            option_name=classification.matched_marker,
            is_tgl=classification.is_tgl,
            is_big_sale=classification.is_big_sale,
            raw_data=event.raw,
            poll_run_id=state.run.run_id,
            processed_at=self._clock(),
        )
        if not self._repository.insert_estimate(estimate):
            logger.info("poll_event_skipped", estimate_id=estimate_id, reason="conflict")
            return OUTCOME_SKIPPED

        logger.info(
            "poll_event_classified",
            estimate_id=estimate_id,
            seller=seller_name,
            amount=event.amount,
            is_tgl=classification.is_tgl,
            is_big_sale=classification.is_big_sale,
        )

        for celebration_type in classification.celebration_types:
            report = deliver_celebration_use_case(
                estimate,
                celebration_type,
                repository=self._repository,
                ledger=self._ledger,
                selector=self._selector,
                sender=self._sender,
            )
            state.run.celebrations_sent += report.sent

        return OUTCOME_PROCESSED

    def _enrich(self, lookup: Callable[[str | None], str], entity_id: str | None) -> str:
        name = lookup(entity_id)
        if self._settings.enrichment_delay_seconds > 0:
            self._sleep(self._settings.enrichment_delay_seconds)
        return name

    def _observe(self, run: PollRun) -> None:
        POLL_RUNS_TOTAL.labels(variant=run.variant.value, status=run.status.value).inc()
        POLL_RUN_DURATION_SECONDS.labels(variant=run.variant.value).observe(
            run.duration_ms / 1000
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def poll_sales_use_case(
    variant: PollVariant,
    *,
    source: EventSourceProtocol,
    repository: RepositoryProtocol,
    sender: ChannelSenderProtocol,
    settings: Settings,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult:
    """Run one poll of the given variant.

    Example:
        >>> result = poll_sales_use_case(
        ...     PollVariant.REGULAR,
        ...     source=client, repository=repo, sender=dispatcher, settings=settings,
        ... )
        >>> result.to_response()["estimatesFound"]
        12
    """
    poller = Poller(source, repository, sender, settings, sleep=sleep)
    return poller.run(variant)
