"""Query builders for constructing type-safe database queries.

Instead of building SQL WHERE clauses with string literals, use these
builders to create queries in a type-safe, testable way. Both SQLite
(``?``) and PostgreSQL (``%s``) placeholders are supported.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import pytz

from src.domain.models import ClaimStatus


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize a timestamp for TEXT columns.

    Fixed-width microsecond precision keeps lexicographic order equal to
    chronological order, so range filters work on the raw column.

    Example:
        >>> format_timestamp(datetime(2026, 1, 5, 10, 0))
        '2026-01-05T10:00:00.000000+00:00'
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a timestamp column value into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


@dataclass
class ClaimQueryCriteria:
    """Criteria for selecting delivery claims.

    All given filters are combined with AND; an empty criteria matches every
    claim.

    Example:
        >>> criteria = ClaimQueryCriteria(
        ...     statuses=[ClaimStatus.PENDING],
        ...     older_than=datetime(2026, 1, 5, 10, 0),
        ... )
        >>> where, params = criteria.to_where_clause("?")
        >>> where
        'status IN (?) AND created_at < ?'
    """

    estimate_id: str | None = None
    """Only claims for this estimate"""

    statuses: Iterable[ClaimStatus] | None = None
    """Only claims in one of these statuses (OR logic)"""

    older_than: datetime | None = None
    """Only claims created strictly before this timestamp"""

    def to_where_clause(self, placeholder: str = "%s") -> tuple[str, list[Any]]:
        """Build SQL WHERE clause with parameters.

        Args:
            placeholder: Driver parameter marker (``?`` or ``%s``)

        Returns:
            Tuple of (where_clause, parameters); the clause is ``1=1`` when
            no filter is set
        """
        conditions: list[str] = []
        params: list[Any] = []

        if self.estimate_id is not None:
            conditions.append(f"estimate_id = {placeholder}")
            params.append(self.estimate_id)

        if self.statuses is not None:
            statuses = [ClaimStatus(status).value for status in self.statuses]
            if not statuses:
                # Empty status list matches nothing
                conditions.append("1=0")
            else:
                markers = ", ".join([placeholder] * len(statuses))
                conditions.append(f"status IN ({markers})")
                params.extend(statuses)

        if self.older_than is not None:
            conditions.append(f"created_at < {placeholder}")
            params.append(format_timestamp(self.older_than))

        if not conditions:
            return "1=1", params
        return " AND ".join(conditions), params
