"""Administrative claim reset use case.

Stuck ``pending`` claims (a crash between claim and finalize) block every
later delivery attempt for their key. Nothing expires them automatically;
an operator lists them and explicitly deletes the ones to retry.

An estimate left without claims is deleted as well and evicted from the
recent-id cache, since the poller skips estimates it has already stored.
"""

from collections.abc import Iterable
from datetime import datetime

from src.adapters.watermark_store import WatermarkStore
from src.config.logging_config import get_logger
from src.domain.models import ClaimStatus, DeliveryClaim, ResetResult
from src.domain.polling_constants import PRIMARY_WATERMARK_KEY
from src.domain.protocols import RepositoryProtocol

logger = get_logger(__name__)


def list_stale_pending_claims(
    repository: RepositoryProtocol, older_than: datetime
) -> list[DeliveryClaim]:
    """Pending claims created before ``older_than`` (read-only)."""
    return repository.list_claims(statuses=[ClaimStatus.PENDING], older_than=older_than)


def reset_claims_use_case(
    repository: RepositoryProtocol,
    watermarks: WatermarkStore,
    *,
    estimate_id: str | None = None,
    statuses: Iterable[ClaimStatus] | None = None,
    older_than: datetime | None = None,
    forget_estimate: bool = False,
    dry_run: bool = False,
) -> ResetResult:
    """Delete delivery claims so the next poll can retry them.

    Args:
        repository: Persistence backend
        watermarks: Watermark store holding the recent-id cache
        estimate_id: Only claims for this estimate
        statuses: Only claims in these statuses
        older_than: Only claims created before this timestamp
        forget_estimate: Delete the matched Estimate rows even when other
            claims for them remain (estimates left without claims are
            always deleted)
        dry_run: Report matching claims without deleting anything

    Returns:
        ResetResult with the matched claims and delete counts

    Raises:
        ValueError: If no filter is given (refuses to wipe the whole ledger)
    """
    status_list = list(statuses) if statuses is not None else None
    if estimate_id is None and status_list is None and older_than is None:
        raise ValueError("At least one of estimate_id, statuses, older_than is required")

    claims = repository.list_claims(
        estimate_id=estimate_id, statuses=status_list, older_than=older_than
    )
    result = ResetResult(dry_run=dry_run, claims=claims)
    if dry_run:
        logger.info("claims_reset_dry_run", matched=len(claims))
        return result

    result.claims_deleted = repository.delete_claims(
        estimate_id=estimate_id, statuses=status_list, older_than=older_than
    )

    candidate_ids = sorted({claim.estimate_id for claim in claims})
    if forget_estimate and estimate_id is not None and estimate_id not in candidate_ids:
        candidate_ids.append(estimate_id)
    forgotten = [
        matched_id
        for matched_id in candidate_ids
        if forget_estimate or not repository.has_claim(matched_id)
    ]
    for matched_id in forgotten:
        result.estimates_deleted += repository.delete_estimate(matched_id)
    if forgotten:
        watermarks.forget_ids(PRIMARY_WATERMARK_KEY, forgotten)

    logger.warning(
        "claims_reset",
        estimate_id=estimate_id,
        statuses=[status.value for status in status_list] if status_list else None,
        older_than=older_than.isoformat() if older_than else None,
        claims_deleted=result.claims_deleted,
        estimates_deleted=result.estimates_deleted,
    )
    return result
