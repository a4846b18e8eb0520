"""Base-denomination amount parsing and display formatting.

Amounts are arbitrary-precision ints in base units (e.g. uzig). Display
values divide by a fixed scale (1 ZIG = 1,000,000 uzig).
"""

from __future__ import annotations

import re

_DIGITS_RE = re.compile(r"^\d+$")
# Comma-separated coins: "100uzig,50ibc/abc" → [("100", "uzig"), ("50", "ibc/abc")]
_COIN_RE = re.compile(r"(\d+)([a-z0-9/._-]+)")
# Single coin with a simple denom: "50000000uzig"
_SINGLE_COIN_RE = re.compile(r"^(\d+)([a-z0-9]+)$")


def parse_base_amount(amount_raw: str, denom: str) -> int | None:
    """Parse an amount string into base units.

    Accepts bare digits ("500") or digits followed by the exact denom
    suffix ("500uzig"). Returns None for anything else.
    """
    raw = amount_raw.strip()
    if _DIGITS_RE.match(raw):
        return int(raw)

    lower = raw.lower()
    if denom and lower.endswith(denom):
        numeric = lower[: -len(denom)]
        if _DIGITS_RE.match(numeric):
            return int(numeric)

    return None


def split_coin(amount: str) -> tuple[str, str] | None:
    """Split a single "<digits><denom>" string. Returns (amount, denom) or None."""
    match = _SINGLE_COIN_RE.match(amount.strip().lower())
    if not match:
        return None
    return match.group(1), match.group(2)


def parse_coins(raw: str) -> list[tuple[str, str]]:
    """Parse a concatenated coin string into (amount, denom) pairs."""
    return [(m.group(1), m.group(2)) for m in _COIN_RE.finditer(raw.lower())]


def add_thousands_separators(digits: str) -> str:
    """'1234567' → '1,234,567'."""
    return f"{int(digits):,}"


def format_display_amount(amount_base: int, scale: int = 1_000_000) -> str:
    """Format base units as a display string with trailing zeros stripped.

    1_234_567_890 at scale 1_000_000 → "1,234.56789"; integral amounts
    carry no fraction at all.
    """
    whole, fraction = divmod(amount_base, scale)
    whole_str = add_thousands_separators(str(whole))
    if fraction == 0:
        return whole_str

    width = len(str(scale)) - 1
    fraction_str = str(fraction).rjust(width, "0").rstrip("0")
    return f"{whole_str}.{fraction_str}"
