"""Domain models for the Sales Celebration Bot.

All models use Pydantic v2 for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CelebrationType(str, Enum):
    """Kind of celebration an event qualifies for."""

    TGL = "tgl"
    BIG_SALE = "big_sale"


class ClaimStatus(str, Enum):
    """Delivery claim lifecycle status."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ClaimResult(str, Enum):
    """Outcome of the claim insert guarded by the unique index."""

    INSERTED = "inserted"
    ALREADY_CLAIMED = "already_claimed"


class ContentKind(str, Enum):
    """Celebration content type."""

    MESSAGE = "message"
    GIF = "gif"


class ChannelKind(str, Enum):
    """Chat webhook flavour, decides the payload format."""

    GOOGLE_CHAT = "google_chat"
    SLACK = "slack"


class PollVariant(str, Enum):
    """Poller configuration."""

    REGULAR = "regular"
    MANUAL = "manual"
    CATCHUP = "catchup"


class PollStatus(str, Enum):
    """Poll run status."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class MatchMode(str, Enum):
    """How the TGL marker text is compared."""

    SUBSTRING = "substring"
    EXACT = "exact"


class LineItem(BaseModel):
    """Single line of a sold estimate."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="", description="SKU / item name")
    amount: float = Field(default=0.0, description="Line total")


class SaleEvent(BaseModel):
    """Sold estimate as returned by the upstream feed (read-only)."""

    model_config = ConfigDict(frozen=True)

    external_id: str = Field(..., description="Upstream estimate id")
    sold_at: datetime = Field(..., description="Sold-at timestamp (UTC)")
    seller_id: str | None = Field(default=None, description="Technician id")
    customer_id: str | None = Field(default=None, description="Customer id")
    amount: float = Field(default=0.0, description="Estimate subtotal")
    line_items: tuple[LineItem, ...] = Field(default_factory=tuple)
    name: str = Field(default="", description="Estimate name (marker field)")
    raw: dict[str, Any] = Field(default_factory=dict, description="Upstream payload")

    @field_validator("external_id", "seller_id", "customer_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value)


class ClassificationRules(BaseModel):
    """Configurable qualification rules."""

    big_sale_threshold: float = Field(..., ge=0)
    tgl_marker_text: str = Field(...)
    tgl_match_mode: MatchMode = Field(default=MatchMode.SUBSTRING)
    tgl_case_sensitive: bool = Field(default=True)


class Classification(BaseModel):
    """Qualification flags for a sale event."""

    is_big_sale: bool = False
    is_tgl: bool = False
    matched_marker: str = Field(
        default="", description="Field or line item text that matched the marker"
    )

    @property
    def qualifies(self) -> bool:
        return self.is_big_sale or self.is_tgl

    @property
    def celebration_types(self) -> list[CelebrationType]:
        types: list[CelebrationType] = []
        if self.is_tgl:
            types.append(CelebrationType.TGL)
        if self.is_big_sale:
            types.append(CelebrationType.BIG_SALE)
        return types


class Estimate(BaseModel):
    """Persisted projection of a sale event (one row per external id)."""

    estimate_id: str = Field(..., description="Upstream estimate id")
    salesperson: str = Field(default="", description="Resolved seller name")
    customer_name: str = Field(default="", description="Resolved customer name")
    amount: float = Field(default=0.0)
    sold_at: datetime = Field(...)
    option_name: str = Field(default="", description="Text that matched the marker")
    is_tgl: bool = False
    is_big_sale: bool = False
    raw_data: dict[str, Any] = Field(default_factory=dict)
    poll_run_id: str | None = Field(
        default=None, description="Discovering poll run (None = backfilled)"
    )
    processed_at: datetime | None = None


class DeliveryClaim(BaseModel):
    """Ledger row owning one delivery attempt for (estimate, type, channel)."""

    estimate_id: str
    celebration_type: CelebrationType
    channel_id: str
    status: ClaimStatus = ClaimStatus.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None
    error_message: str | None = None
    message_text: str | None = None
    gif_url: str | None = None


class ContentItem(BaseModel):
    """Celebration message template or GIF."""

    content_id: str = Field(default_factory=lambda: str(uuid4()))
    kind: ContentKind
    body: str = Field(..., description="Message template text or GIF URL")
    category: CelebrationType
    assigned_to: str | None = Field(
        default=None, description="Salesperson name (None = global pool)"
    )
    is_active: bool = True
    last_used_at: datetime | None = None
    last_used_for: str | None = None
    use_count: int = Field(default=0, ge=0)
    paired_gif_id: str | None = None


class Channel(BaseModel):
    """Registered chat webhook."""

    channel_id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(default="")
    url: str = Field(..., description="Incoming webhook URL")
    kind: ChannelKind = ChannelKind.GOOGLE_CHAT
    tags: list[CelebrationType] = Field(default_factory=list)
    is_active: bool = True


class Salesperson(BaseModel):
    """Seller attributes used for message rendering."""

    name: str
    gender: str | None = None


class PollRun(BaseModel):
    """Audit row for a poller invocation."""

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    variant: PollVariant
    status: PollStatus = PollStatus.RUNNING
    started_at: datetime
    window_from: datetime | None = None
    window_to: datetime | None = None
    events_found: int = 0
    events_processed: int = 0
    events_skipped: int = 0
    celebrations_sent: int = 0
    duration_ms: int = 0
    error_message: str | None = None


class Watermark(BaseModel):
    """Last successful poll timestamp and recently processed ids."""

    poller_key: str
    last_poll_timestamp: datetime | None = None
    recent_ids: list[str] = Field(default_factory=list)


class SelectedContent(BaseModel):
    """Rendered celebration content."""

    text: str
    gif_url: str = ""
    message_id: str | None = None
    gif_id: str | None = None
    is_fallback: bool = False


class DispatchOutcome(BaseModel):
    """Result of a single webhook POST."""

    success: bool
    status_code: int | None = None
    error: str | None = None


class CelebrationReport(BaseModel):
    """Result of delivering one celebration type for one estimate."""

    celebration_type: CelebrationType
    sent: int = 0
    failed: int = 0
    skipped_channels: list[str] = Field(default_factory=list)
    already_claimed: bool = False
    content: SelectedContent | None = None


class PollResult(BaseModel):
    """Result of a poller invocation."""

    run_id: str | None = None
    variant: PollVariant
    success: bool
    skipped: bool = False
    estimates_found: int = 0
    estimates_processed: int = 0
    estimates_skipped: int = 0
    celebrations_sent: int = 0
    duration_ms: int = 0
    errors: list[str] = Field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        """Render the request/response boundary payload."""
        return {
            "success": self.success,
            "skipped": self.skipped,
            "runId": self.run_id,
            "variant": self.variant.value,
            "estimatesFound": self.estimates_found,
            "estimatesProcessed": self.estimates_processed,
            "estimatesSkipped": self.estimates_skipped,
            "celebrationsSent": self.celebrations_sent,
            "durationMs": self.duration_ms,
            "errors": list(self.errors),
        }


class BackfillResult(BaseModel):
    """Result of a persist-only backfill."""

    events_found: int = 0
    inserted: int = 0
    already_present: int = 0
    errors: list[str] = Field(default_factory=list)


class ResetResult(BaseModel):
    """Result of the administrative claim reset."""

    claims_deleted: int = 0
    estimates_deleted: int = 0
    dry_run: bool = False
    claims: list[DeliveryClaim] = Field(default_factory=list)
