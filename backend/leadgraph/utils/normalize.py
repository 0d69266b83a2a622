"""Identifier normalization shared by the duplicate finder, merger and models."""

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")

PHONE_KEY_DIGITS = 10


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lowercase and trim an email; empty results become None."""
    if not email:
        return None
    normalized = email.strip().lower()
    return normalized or None


def phone_digits(phone: Optional[str]) -> str:
    """Strip everything but digits ("+1-555-111-2222" -> "15551112222")."""
    if not phone:
        return ""
    return _NON_DIGITS.sub("", str(phone))


def phone_key(phone: Optional[str]) -> Optional[str]:
    """Last 10 digits of a phone, tolerant to country-code variance.

    Phones with fewer than 10 digits have no key and never match.
    """
    digits = phone_digits(phone)
    if len(digits) < PHONE_KEY_DIGITS:
        return None
    return digits[-PHONE_KEY_DIGITS:]


def is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")
