"""
Phone number normalization helpers.

The same canonical form must be used on both sides of every participant
comparison, so storage and queries both go through ``normalize_phone_number``.
"""

import re

_NON_DIAL_CHARS = re.compile(r"[^\d+]")
_LINE_ID_PREFIX = "PN"


def normalize_phone_number(raw: str | None) -> str:
    """Normalize a phone number to a canonical E.164-like form.

    Rules: strip everything except digits and '+'; keep values already
    starting with '+'; 10 digits get '+1'; 11 digits with a leading '1' get '+';
    anything else gets '+'.

    >>> normalize_phone_number("5551234567")
    '+15551234567'
    >>> normalize_phone_number("+1 (555) 123-4567")
    '+15551234567'
    """
    if not raw:
        return ""

    cleaned = _NON_DIAL_CHARS.sub("", raw.strip())
    if not cleaned:
        return ""

    if cleaned.startswith("+"):
        return cleaned
    if len(cleaned) == 10:
        return f"+1{cleaned}"
    if len(cleaned) == 11 and cleaned.startswith("1"):
        return f"+{cleaned}"
    return f"+{cleaned}"


def strip_channel_prefix(address: str | None) -> str:
    """Drop a channel scheme such as ``whatsapp:`` from a provider address."""
    if not address:
        return ""
    if ":" in address:
        scheme, _, rest = address.partition(":")
        if scheme.isalpha():
            return rest
    return address


def phone_variants(raw: str | None) -> set[str]:
    """Raw and normalized forms of a number, for tolerant lookups."""
    if not raw:
        return set()
    variants = {raw, normalize_phone_number(raw)}
    variants.discard("")
    return variants


def looks_like_phone_line_id(value: str | None) -> bool:
    """Provider phone-line identifiers (``PN...``) are never dialable numbers."""
    return bool(value) and value.startswith(_LINE_ID_PREFIX)  # type: ignore[union-attr]
