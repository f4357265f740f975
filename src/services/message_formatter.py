"""Celebration message rendering.

Placeholder substitution, pronoun resolution, amount/customer formatting and
the deterministic fallback texts used when no content is configured.
"""

from dataclasses import dataclass
from typing import Final

from src.domain.models import CelebrationType


@dataclass(frozen=True, slots=True)
class Pronouns:
    """Pronoun forms substituted into message templates."""

    subjective: str
    possessive: str
    objective: str
    contraction: str


MALE_PRONOUNS: Final[Pronouns] = Pronouns("he", "his", "him", "he's")
FEMALE_PRONOUNS: Final[Pronouns] = Pronouns("she", "her", "her", "she's")
NEUTRAL_PRONOUNS: Final[Pronouns] = Pronouns("they", "their", "them", "they've")


def get_pronouns(gender: str | None) -> Pronouns:
    """Resolve pronouns from a free-text gender attribute.

    Example:
        >>> get_pronouns("Female").subjective
        'she'
        >>> get_pronouns(None).possessive
        'their'
    """
    normalized = (gender or "").strip().lower()
    if normalized == "male":
        return MALE_PRONOUNS
    if normalized == "female":
        return FEMALE_PRONOUNS
    return NEUTRAL_PRONOUNS


def format_amount(amount: float) -> str:
    """Format an amount with thousands separators and two decimals.

    Example:
        >>> format_amount(1234.5)
        '1,234.50'
    """
    return f"{amount:,.2f}"


def format_customer_name(raw_name: str) -> str:
    """Turn "Last, First" into "First Last"; other shapes pass through.

    Example:
        >>> format_customer_name("Doe, Jane")
        'Jane Doe'
        >>> format_customer_name("Acme Plumbing")
        'Acme Plumbing'
    """
    parts = raw_name.split(",")
    if len(parts) == 2:
        last, first = parts[0].strip(), parts[1].strip()
        return f"{first} {last}"
    return raw_name


def render_template(
    template: str,
    *,
    seller_name: str,
    customer_name: str,
    amount: float,
    gender: str | None,
) -> str:
    """Substitute all supported placeholders in a message template."""
    pronouns = get_pronouns(gender)
    replacements = {
        "{name}": seller_name,
        "{customer}": customer_name,
        "{amount}": format_amount(amount),
        "{he/she}": pronouns.subjective,
        "{his/her}": pronouns.possessive,
        "{him/her}": pronouns.objective,
        "{he's/she's}": pronouns.contraction,
    }
    rendered = template
    for token, value in replacements.items():
        rendered = rendered.replace(token, value)
    return rendered


def fallback_message(
    category: CelebrationType,
    *,
    seller_name: str,
    customer_name: str,
    amount: float,
) -> str:
    """Deterministic text used when no active message exists for a category."""
    if category is CelebrationType.TGL:
        return (
            f"{seller_name} just generated a TGL at {customer_name}'s house! "
            f"Awesome work {seller_name}!!!"
        )
    return (
        f"🎉 {seller_name} just closed a sale of ${format_amount(amount)}! "
        "Amazing work!"
    )
