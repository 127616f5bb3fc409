"""Phone number normalization for pairing requests."""

import re
from typing import Optional

from wagateway.session.exceptions import PhoneValidationError

MIN_DIGITS = 10
MAX_DIGITS = 15

_NON_DIGITS = re.compile(r"[^0-9]")


def clean_phone(raw: Optional[str]) -> str:
    """Strip everything that is not a digit."""
    if raw is None:
        return ""
    return _NON_DIGITS.sub("", str(raw))


def is_valid_phone(digits: str) -> bool:
    """Country code + subscriber number, 10-15 digits, no leading zero."""
    return (
        digits.isdigit()
        and MIN_DIGITS <= len(digits) <= MAX_DIGITS
        and not digits.startswith("0")
    )


def normalize_phone(raw: Optional[str]) -> str:
    """Return the digit-only form of ``raw`` or raise PhoneValidationError.

    Idempotent: ``normalize_phone(normalize_phone(x)) == normalize_phone(x)``.
    """
    digits = clean_phone(raw)
    if not is_valid_phone(digits):
        raise PhoneValidationError("Invalid phone number format")
    return digits
