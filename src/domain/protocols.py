"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that adapters must implement.
"""

from collections.abc import Iterable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Protocol

from src.domain.models import (
    CelebrationType,
    Channel,
    ClaimResult,
    ClaimStatus,
    ContentItem,
    ContentKind,
    DeliveryClaim,
    DispatchOutcome,
    Estimate,
    PollRun,
    SaleEvent,
    Salesperson,
)


class EventSourceProtocol(Protocol):
    """Protocol for the upstream sales-estimate feed."""

    def fetch_sold_events(self, since: datetime) -> list[SaleEvent]:
        """Fetch events sold at or after ``since``.

        Args:
            since: Inclusive lower bound (UTC)

        Returns:
            Events ordered by sold-at time; may contain already-seen events

        Raises:
            UpstreamFetchError: On auth, transport or payload errors
        """
        ...

    def get_technician_name(self, technician_id: str | None) -> str:
        """Resolve a seller id to a display name.

        Raises:
            UpstreamFetchError: On API communication errors
        """
        ...

    def get_customer_name(self, customer_id: str | None) -> str:
        """Resolve a customer id to a display name.

        Raises:
            UpstreamFetchError: On API communication errors
        """
        ...


class ChannelSenderProtocol(Protocol):
    """Protocol for outbound chat webhook delivery."""

    def send(self, message: str, gif_url: str, channel: Channel) -> DispatchOutcome:
        """Deliver rendered content to one channel.

        Never raises for delivery failures: a non-2xx status or transport
        error is reported as ``DispatchOutcome(success=False)``.
        """
        ...


class RepositoryProtocol(Protocol):
    """Protocol for data persistence operations."""

    def connection(self) -> AbstractContextManager[Any]:
        """Borrow a DB-API connection (used by the watermark store)."""
        ...

    def close(self) -> None:
        """Release backend resources."""
        ...

    # Estimates

    def estimate_exists(self, estimate_id: str) -> bool:
        """Return True if an Estimate row exists for the id."""
        ...

    def get_estimate(self, estimate_id: str) -> Estimate | None:
        """Load a persisted Estimate."""
        ...

    def insert_estimate(self, estimate: Estimate) -> bool:
        """Insert an Estimate once.

        Returns:
            True if inserted, False if a row with the same id already exists
        """
        ...

    def delete_estimate(self, estimate_id: str) -> int:
        """Delete an Estimate row (administrative reset only)."""
        ...

    # Delivery claims

    def has_claim(
        self,
        estimate_id: str,
        celebration_type: CelebrationType | None = None,
        channel_id: str | None = None,
    ) -> bool:
        """Return True if any claim matches (any status)."""
        ...

    def insert_claim(self, claim: DeliveryClaim) -> ClaimResult:
        """Insert a claim guarded by the unique (estimate, type, channel) index."""
        ...

    def update_claim(
        self,
        estimate_id: str,
        celebration_type: CelebrationType,
        channel_id: str,
        *,
        status: ClaimStatus,
        error_message: str | None = None,
        message_text: str | None = None,
        gif_url: str | None = None,
    ) -> None:
        """Finalize a claim."""
        ...

    def list_claims(
        self,
        *,
        estimate_id: str | None = None,
        statuses: Iterable[ClaimStatus] | None = None,
        older_than: datetime | None = None,
    ) -> list[DeliveryClaim]:
        """List claims matching all given filters."""
        ...

    def delete_claims(
        self,
        *,
        estimate_id: str | None = None,
        statuses: Iterable[ClaimStatus] | None = None,
        older_than: datetime | None = None,
    ) -> int:
        """Delete claims matching all given filters (administrative reset only)."""
        ...

    # Content

    def get_active_content(
        self,
        kind: ContentKind,
        category: CelebrationType,
        *,
        assigned_to: str | None,
    ) -> list[ContentItem]:
        """Active content for a category.

        Args:
            assigned_to: Salesperson name, or None for the global pool only
        """
        ...

    def get_content_item(self, content_id: str) -> ContentItem | None:
        """Load one content item regardless of active flag."""
        ...

    def record_content_usage(
        self, content_id: str, *, used_for: str, used_at: datetime
    ) -> None:
        """Increment use count and stamp last use."""
        ...

    def save_content_items(self, items: list[ContentItem]) -> int:
        """Upsert content items."""
        ...

    # Channels and salespeople

    def get_active_channels(self, celebration_type: CelebrationType) -> list[Channel]:
        """Active channels tagged for the celebration type."""
        ...

    def save_channels(self, channels: list[Channel]) -> int:
        """Upsert channels."""
        ...

    def get_salesperson(self, name: str) -> Salesperson | None:
        """Look up a salesperson by display name."""
        ...

    def save_salespeople(self, people: list[Salesperson]) -> int:
        """Upsert salespeople."""
        ...

    # Poll runs

    def create_poll_run(self, run: PollRun) -> None:
        """Insert a poll run audit row."""
        ...

    def update_poll_run(self, run: PollRun) -> None:
        """Persist final poll run state."""
        ...

    def get_recent_poll_runs(self, limit: int = 20) -> list[PollRun]:
        """Most recent poll runs first."""
        ...
