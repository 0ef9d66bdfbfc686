# matrix_hub/services/identifiers.py
"""
Product Identifier canonicalization.

Handles:
- Digit normalization of noisy GTIN/UPC strings ("0 12345-67890 5" -> "012345678905")
- Zero-padded EAN-8 collapse ("000002785123" -> "02785123")
- Canonicalizing user-typed search queries the same way
"""
from __future__ import annotations
import re

_NON_DIGITS = re.compile(r"[^0-9]")
_ALL_ZEROS = re.compile(r"^0+$")

SHORT_GTIN_LENGTH = 8
STANDARD_GTIN_LENGTHS = (12, 13, 14)
# Width of the gtin columns in db_models; longer digit runs are noise.
MAX_GTIN_LENGTH = 32


def normalize_digits(raw) -> str:
    """Strip everything but ASCII digits."""
    return _NON_DIGITS.sub("", "" if raw is None else str(raw))


def canonical_gtin(raw) -> str:
    """
    Canonical identifier for a raw GTIN/UPC string.

    - 8 digits stay as they are
    - longer than 8 with an all-zero prefix before the last 8 digits is a
      zero-padded EAN-8: keep the last 8
    - anything else (12/13/14 digit GTINs included) is returned unchanged

    Examples:
        000002785123  -> 02785123
        008421372232  -> 008421372232 (prefix 0084 is not all zeros)

    Empty result means "no identifier"; callers skip such records.
    """
    digits = normalize_digits(raw)
    if not digits:
        return ""

    if len(digits) == SHORT_GTIN_LENGTH:
        return digits

    if len(digits) > SHORT_GTIN_LENGTH:
        prefix, last8 = digits[:-SHORT_GTIN_LENGTH], digits[-SHORT_GTIN_LENGTH:]
        if _ALL_ZEROS.match(prefix):
            return last8

    return digits


def canonicalize_query(q) -> str:
    """User-typed GTIN search -> canonical form (same rule as the pipeline)."""
    return canonical_gtin(q)
