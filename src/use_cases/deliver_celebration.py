"""Deliver celebration use case.

Runs the claim-before-send protocol for one estimate and one celebration
type across every active channel tagged for that type.
"""

from src.config.logging_config import get_logger
from src.domain.models import (
    CelebrationReport,
    CelebrationType,
    ClaimResult,
    ClaimStatus,
    DispatchOutcome,
    Estimate,
)
from src.domain.protocols import ChannelSenderProtocol, RepositoryProtocol
from src.observability.metrics import CELEBRATIONS_TOTAL
from src.services.content_selector import ContentSelector
from src.services.dedup_ledger import DedupLedger

logger = get_logger(__name__)


def deliver_celebration_use_case(
    estimate: Estimate,
    celebration_type: CelebrationType,
    *,
    repository: RepositoryProtocol,
    ledger: DedupLedger,
    selector: ContentSelector,
    sender: ChannelSenderProtocol,
) -> CelebrationReport:
    """Celebrate one estimate for one celebration type.

    Protocol per channel:
    1. Skip the whole celebration if any claim exists for (estimate, type)
    2. Select content once (same text and GIF for every channel)
    3. Skip channels that already hold a claim
    4. Insert a pending claim; a conflict means another run owns it
    5. Dispatch, then finalize the claim as success or failed; a sender that
       raises counts as a failed dispatch

    Args:
        estimate: Persisted estimate with resolved names
        celebration_type: Celebration to deliver
        repository: Channel lookup
        ledger: Delivery claim ledger
        selector: Content selector
        sender: Chat webhook sender

    Returns:
        CelebrationReport with per-channel counts

    Raises:
        RepositoryError: If claim storage fails mid-protocol
    """
    report = CelebrationReport(celebration_type=celebration_type)
    estimate_id = estimate.estimate_id

    if ledger.has_been_claimed(estimate_id, celebration_type):
        logger.info(
            "celebration_already_claimed",
            estimate_id=estimate_id,
            celebration_type=celebration_type.value,
        )
        report.already_claimed = True
        return report

    channels = repository.get_active_channels(celebration_type)
    if not channels:
        logger.warning(
            "celebration_no_active_channels",
            estimate_id=estimate_id,
            celebration_type=celebration_type.value,
        )
        return report

    content = selector.select(
        celebration_type,
        estimate.salesperson,
        estimate.customer_name,
        estimate.amount,
    )
    report.content = content

    for channel in channels:
        if ledger.has_channel_claim(estimate_id, celebration_type, channel.channel_id):
            report.skipped_channels.append(channel.channel_id)
            CELEBRATIONS_TOTAL.labels(
                celebration_type=celebration_type.value, outcome="skipped"
            ).inc()
            continue

        if (
            ledger.claim(estimate_id, celebration_type, channel.channel_id)
            is ClaimResult.ALREADY_CLAIMED
        ):
            report.skipped_channels.append(channel.channel_id)
            CELEBRATIONS_TOTAL.labels(
                celebration_type=celebration_type.value, outcome="conflict"
            ).inc()
            continue

        try:
            outcome = sender.send(content.text, content.gif_url, channel)
        except Exception as e:
            logger.exception(
                "celebration_send_crashed",
                estimate_id=estimate_id,
                channel_id=channel.channel_id,
            )
            outcome = DispatchOutcome(success=False, error=f"{type(e).__name__}: {e}")
        status = ledger.finalize(
            estimate_id,
            celebration_type,
            channel.channel_id,
            outcome,
            message_text=content.text,
            gif_url=content.gif_url,
        )

        if status is ClaimStatus.SUCCESS:
            report.sent += 1
        else:
            report.failed += 1
        CELEBRATIONS_TOTAL.labels(
            celebration_type=celebration_type.value, outcome=status.value
        ).inc()

    logger.info(
        "celebration_delivered",
        estimate_id=estimate_id,
        celebration_type=celebration_type.value,
        sent=report.sent,
        failed=report.failed,
        skipped_channels=len(report.skipped_channels),
        fallback=content.is_fallback,
    )
    return report
