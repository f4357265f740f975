"""Business rules and constants for sales polling and celebration delivery.

Polling windows, pacing and content-rotation rules are centralized here so
that every poller variant and the content selector agree on them.
"""

from typing import Final

DEFAULT_BIG_SALE_THRESHOLD: Final[float] = 700.0
"""Amount (currency units) a sale must exceed to count as a big sale.

Example:
    - amount=750, threshold=700 → big sale
    - amount=700, threshold=700 → not a big sale (strictly greater)
"""

DEFAULT_TGL_MARKER_TEXT: Final[str] = "Option C - System Update"
"""Marker text identifying a tech-generated lead."""

DEFAULT_LOOKBACK_BUFFER_MINUTES: Final[int] = 30
"""How far behind the watermark the regular/manual poll starts its window.

The upstream feed is eventually consistent near "now": an estimate sold at
10:00 may only become visible at 10:20. Re-reading the last 30 minutes on
every run catches those late arrivals; dedup makes the overlap harmless.
"""

DEFAULT_CATCHUP_LOOKBACK_HOURS: Final[int] = 6
"""Window of the catchup poll, for visibility lag beyond the 30-minute buffer."""

DEFAULT_RECENT_IDS_CACHE_SIZE: Final[int] = 500
"""Size of the recently-processed id FIFO (~6 poll cycles × ~80 estimates)."""

DEFAULT_ENRICHMENT_DELAY_SECONDS: Final[float] = 0.5
DEFAULT_PROCESSING_BATCH_SIZE: Final[int] = 10
DEFAULT_BATCH_PAUSE_SECONDS: Final[float] = 3.0
"""Upstream rate-limit pacing: delay between enrichment calls, pause between batches."""

DEFAULT_MAX_RUN_ERRORS: Final[int] = 20
"""Maximum number of per-event error strings kept on a poll result."""

PRIMARY_WATERMARK_KEY: Final[str] = "primary"
"""Watermark row shared by the regular and manual pollers."""

CONTENT_COOLDOWN_HOURS: Final[int] = 24
"""Seller-specific content is not reused for the same seller within this window."""

NEVER_USED_WEIGHT: Final[int] = 10
RECENCY_WEIGHT_STEPS: Final[tuple[tuple[float, int], ...]] = (
    (168.0, 8),
    (72.0, 6),
    (24.0, 4),
    (12.0, 2),
)
MIN_RECENCY_WEIGHT: Final[int] = 1
"""Recency weights: hours since last use strictly above the bound → weight.

Example:
    - never used → 10
    - used 200h ago → 8
    - used 30h ago → 4
    - used 1h ago → 1
"""
