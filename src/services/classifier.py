"""Sale event qualification.

Decides whether a sold estimate is a big sale and/or a tech-generated lead.
Pure functions only: no I/O, no configuration lookups.
"""

from src.domain.models import (
    Classification,
    ClassificationRules,
    MatchMode,
    SaleEvent,
)


def marker_matches(text: str | None, rules: ClassificationRules) -> bool:
    """Check whether ``text`` carries the TGL marker under the configured rule.

    Example:
        >>> rules = ClassificationRules(big_sale_threshold=700, tgl_marker_text="Option C")
        >>> marker_matches("Option C - System Update", rules)
        True
        >>> marker_matches("option c", rules)
        False
    """
    marker = rules.tgl_marker_text
    if not text or not marker:
        return False

    if not rules.tgl_case_sensitive:
        text = text.casefold()
        marker = marker.casefold()

    if rules.tgl_match_mode is MatchMode.EXACT:
        return text.strip() == marker.strip()
    return marker in text


def classify(event: SaleEvent, rules: ClassificationRules) -> Classification:
    """Classify a sale event.

    Big sale: amount strictly above the threshold.

    TGL: the marker appears in the estimate name, or the marker appears in a
    line item of a zero-amount estimate. Both flags can be set at once, each
    producing its own celebration.

    Args:
        event: Sold estimate
        rules: Threshold and marker matching rules

    Returns:
        Classification flags plus the text that matched the marker
    """
    is_big_sale = event.amount > rules.big_sale_threshold

    matched_marker = ""
    if marker_matches(event.name, rules):
        matched_marker = event.name
    elif event.amount == 0:
        for item in event.line_items:
            if marker_matches(item.name, rules):
                matched_marker = item.name
                break

    return Classification(
        is_big_sale=is_big_sale,
        is_tgl=bool(matched_marker),
        matched_marker=matched_marker,
    )
