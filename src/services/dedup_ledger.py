"""Claim-before-send delivery ledger.

Guarantees at most one successful delivery per (estimate, celebration type,
channel) across overlapping poller runs. The pending-claim insert, guarded by
the storage unique index, is the only safety mechanism; the existence checks
are early exits that save content selection and network calls.
"""

from src.config.logging_config import get_logger
from src.domain.models import (
    CelebrationType,
    ClaimResult,
    ClaimStatus,
    DeliveryClaim,
    DispatchOutcome,
)
from src.domain.protocols import RepositoryProtocol

logger = get_logger(__name__)


class DedupLedger:
    """Delivery claim ledger over the repository."""

    def __init__(self, repository: RepositoryProtocol) -> None:
        self._repository = repository

    def has_been_claimed(
        self, estimate_id: str, celebration_type: CelebrationType | None = None
    ) -> bool:
        """True if any claim (any channel, any status) exists.

        Without ``celebration_type`` any claim for the estimate counts.
        """
        return self._repository.has_claim(estimate_id, celebration_type)

    def has_channel_claim(
        self, estimate_id: str, celebration_type: CelebrationType, channel_id: str
    ) -> bool:
        return self._repository.has_claim(estimate_id, celebration_type, channel_id)

    def claim(
        self, estimate_id: str, celebration_type: CelebrationType, channel_id: str
    ) -> ClaimResult:
        """Insert a pending claim.

        Returns:
            ``ClaimResult.INSERTED`` if this caller owns the delivery,
            ``ClaimResult.ALREADY_CLAIMED`` if another run got there first
        """
        result = self._repository.insert_claim(
            DeliveryClaim(
                estimate_id=estimate_id,
                celebration_type=celebration_type,
                channel_id=channel_id,
                status=ClaimStatus.PENDING,
            )
        )
        if result is ClaimResult.ALREADY_CLAIMED:
            logger.info(
                "celebration_claim_conflict",
                estimate_id=estimate_id,
                celebration_type=celebration_type.value,
                channel_id=channel_id,
            )
        return result

    def finalize(
        self,
        estimate_id: str,
        celebration_type: CelebrationType,
        channel_id: str,
        outcome: DispatchOutcome,
        *,
        message_text: str | None = None,
        gif_url: str | None = None,
    ) -> ClaimStatus:
        """Record the dispatch outcome on an owned claim."""
        status = ClaimStatus.SUCCESS if outcome.success else ClaimStatus.FAILED
        self._repository.update_claim(
            estimate_id,
            celebration_type,
            channel_id,
            status=status,
            error_message=None if outcome.success else outcome.error,
            message_text=message_text,
            gif_url=gif_url,
        )
        logger.debug(
            "celebration_claim_finalized",
            estimate_id=estimate_id,
            celebration_type=celebration_type.value,
            channel_id=channel_id,
            status=status.value,
        )
        return status
