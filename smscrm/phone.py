"""
Phone number normalization.

Upstream data mixes "+15551234567", "15551234567", "(555) 123-4567" and
friends. Everything that compares phone numbers goes through this module.
"""

import re
from typing import Optional

from smscrm.config import settings

_FORMATTING_CHARS = re.compile(r"[\s\-().]")


def normalize_phone(raw: Optional[str], default_country_code: Optional[str] = None) -> str:
    """
    Canonicalize a phone number to a "+"-prefixed digit string.

    Bare 10-digit numbers get the default country code. Anything else without
    a leading "+" just gets one. Idempotent.

    Args:
        raw: Phone number as received from any source
        default_country_code: Overrides settings.DEFAULT_COUNTRY_CODE

    Returns:
        Normalized phone number, or "" for empty input
    """
    if not raw:
        return ""

    cleaned = _FORMATTING_CHARS.sub("", raw.strip())
    if not cleaned:
        return ""

    if cleaned.startswith("+"):
        return cleaned

    country_code = default_country_code or settings.DEFAULT_COUNTRY_CODE
    if cleaned.isdigit() and len(cleaned) == 10:
        return f"+{country_code}{cleaned}"
    return f"+{cleaned}"


def phone_variants(raw: Optional[str]) -> set[str]:
    """All representations of a phone number worth trying in an exact lookup."""
    if not raw:
        return set()

    variants = {raw, raw.strip()}
    normalized = normalize_phone(raw)
    if normalized:
        variants.add(normalized)
        variants.add(normalized[1:])
        national = national_number(normalized)
        if national:
            variants.add(national)

    stripped = raw.strip()
    if stripped.startswith("+"):
        variants.add(stripped[1:])
    else:
        variants.add(f"+{stripped}")

    return {v for v in variants if v}


def national_number(normalized: str) -> Optional[str]:
    """The bare 10-digit form of a number in the default country, else None."""
    prefix = f"+{settings.DEFAULT_COUNTRY_CODE}"
    if not normalized.startswith(prefix):
        return None
    rest = normalized[len(prefix):]
    return rest if rest.isdigit() and len(rest) == 10 else None


def phone_suffix(raw: Optional[str], length: int = 4) -> str:
    """Trailing digits of a phone number, stable across every formatting."""
    digits = "".join(ch for ch in (raw or "") if ch.isdigit())
    return digits[-length:]


def phones_match(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two phone numbers across exact, normalized and +/no-+ forms."""
    if not a or not b:
        return False
    if a == b:
        return True
    if normalize_phone(a) == normalize_phone(b):
        return True
    return bool(phone_variants(a) & phone_variants(b))
