"""Recency-weighted celebration content selection.

Picks a message and a GIF for a celebration so that content rotates:
never-used items are favoured, recently used items are rarely repeated, and
a seller's personal messages are not reused for that seller within the
cooldown window. The selector always produces output; missing content or a
repository failure falls back to a deterministic template.
"""

import random
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

import pytz

from src.config.logging_config import get_logger
from src.domain.exceptions import RepositoryError
from src.domain.models import CelebrationType, ContentItem, ContentKind, SelectedContent
from src.domain.polling_constants import (
    CONTENT_COOLDOWN_HOURS,
    MIN_RECENCY_WEIGHT,
    NEVER_USED_WEIGHT,
    RECENCY_WEIGHT_STEPS,
)
from src.domain.protocols import RepositoryProtocol
from src.services.message_formatter import fallback_message, render_template

logger = get_logger(__name__)


def recency_weight(item: ContentItem, now: datetime) -> int:
    """Selection weight from hours since last use.

    Example:
        - never used → 10
        - used 100h ago → 6
        - used 2h ago → 1
    """
    if item.last_used_at is None:
        return NEVER_USED_WEIGHT

    hours_since = (now - item.last_used_at).total_seconds() / 3600
    for bound, weight in RECENCY_WEIGHT_STEPS:
        if hours_since > bound:
            return weight
    return MIN_RECENCY_WEIGHT


def select_weighted(
    items: Sequence[ContentItem], now: datetime, rng: random.Random
) -> ContentItem | None:
    """Pick one item with probability proportional to its recency weight."""
    if not items:
        return None

    weights = [recency_weight(item, now) for item in items]
    target = rng.uniform(0, sum(weights))
    cumulative = 0.0
    for item, weight in zip(items, weights, strict=True):
        cumulative += weight
        if target < cumulative:
            return item
    return items[-1]


def apply_seller_cooldown(
    items: Sequence[ContentItem],
    seller_name: str,
    now: datetime,
    cooldown_hours: int = CONTENT_COOLDOWN_HOURS,
) -> list[ContentItem]:
    """Drop items used for this seller within the cooldown window."""
    cutoff = now - timedelta(hours=cooldown_hours)
    return [
        item
        for item in items
        if not (
            item.last_used_for == seller_name
            and item.last_used_at is not None
            and item.last_used_at > cutoff
        )
    ]


def _mean_use_count(items: Sequence[ContentItem]) -> float:
    return sum(item.use_count for item in items) / len(items)


def mix_pools(
    seller_items: Sequence[ContentItem], generic_items: Sequence[ContentItem]
) -> list[ContentItem]:
    """Combine seller-specific and generic candidates.

    Seller-specific items win outright while they are used no more often (on
    average) than the generic pool; otherwise both pools compete.
    """
    if not seller_items:
        return list(generic_items)
    if not generic_items:
        return list(seller_items)
    if _mean_use_count(seller_items) <= _mean_use_count(generic_items):
        return list(seller_items)
    return [*seller_items, *generic_items]


class ContentSelector:
    """Selects and renders celebration content."""

    def __init__(
        self,
        repository: RepositoryProtocol,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
        cooldown_hours: int = CONTENT_COOLDOWN_HOURS,
    ) -> None:
        """Initialize selector.

        Args:
            repository: Content, salesperson and usage storage
            rng: Random source (seeded in tests)
            clock: UTC clock
            cooldown_hours: Per-seller reuse cooldown for seller-specific items
        """
        self._repository = repository
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(tz=pytz.UTC))
        self._cooldown_hours = cooldown_hours

    def select(
        self,
        category: CelebrationType,
        seller_name: str,
        customer_name: str,
        amount: float,
    ) -> SelectedContent:
        """Select a message and GIF for a celebration and render the text."""
        now = self._clock()

        message = self._pick(ContentKind.MESSAGE, category, seller_name, now)
        if message is None:
            text = fallback_message(
                category,
                seller_name=seller_name,
                customer_name=customer_name,
                amount=amount,
            )
            logger.info(
                "content_fallback_used",
                celebration_type=category.value,
                seller=seller_name,
            )
        else:
            text = render_template(
                message.body,
                seller_name=seller_name,
                customer_name=customer_name,
                amount=amount,
                gender=self._seller_gender(seller_name),
            )

        gif = self._paired_gif(message) if message else None
        if gif is None:
            gif = self._pick(ContentKind.GIF, category, seller_name, now)

        for item in (message, gif):
            if item is not None:
                self._record_usage(item, seller_name, now)

        return SelectedContent(
            text=text,
            gif_url=gif.body if gif else "",
            message_id=message.content_id if message else None,
            gif_id=gif.content_id if gif else None,
            is_fallback=message is None,
        )

    def _pick(
        self,
        kind: ContentKind,
        category: CelebrationType,
        seller_name: str,
        now: datetime,
    ) -> ContentItem | None:
        try:
            seller_items = self._repository.get_active_content(
                kind, category, assigned_to=seller_name
            )
            generic_items = self._repository.get_active_content(
                kind, category, assigned_to=None
            )
        except RepositoryError as e:
            logger.warning(
                "content_load_failed",
                kind=kind.value,
                celebration_type=category.value,
                error=str(e),
            )
            return None

        seller_items = apply_seller_cooldown(
            seller_items, seller_name, now, self._cooldown_hours
        )
        return select_weighted(mix_pools(seller_items, generic_items), now, self._rng)

    def _paired_gif(self, message: ContentItem) -> ContentItem | None:
        if not message.paired_gif_id:
            return None
        try:
            gif = self._repository.get_content_item(message.paired_gif_id)
        except RepositoryError as e:
            logger.warning(
                "content_paired_gif_load_failed",
                gif_id=message.paired_gif_id,
                error=str(e),
            )
            return None
        if gif is None or not gif.is_active or gif.kind is not ContentKind.GIF:
            return None
        return gif

    def _seller_gender(self, seller_name: str) -> str | None:
        try:
            person = self._repository.get_salesperson(seller_name)
        except RepositoryError as e:
            logger.warning("salesperson_load_failed", seller=seller_name, error=str(e))
            return None
        return person.gender if person else None

    def _record_usage(self, item: ContentItem, seller_name: str, now: datetime) -> None:
        try:
            self._repository.record_content_usage(
                item.content_id, used_for=seller_name, used_at=now
            )
        except RepositoryError as e:
            logger.warning(
                "content_usage_record_failed",
                content_id=item.content_id,
                error=str(e),
            )
