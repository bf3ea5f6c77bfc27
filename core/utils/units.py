"""Fixed-point amount helpers for ledger minor units."""
from __future__ import annotations

from decimal import Decimal


def format_units(value: int, decimals: int) -> str:
    """Render an integer minor-unit amount in display units.

    Mirrors the usual wallet formatting: no exponent, trailing zeros trimmed,
    at least one fractional digit ("1.25", "3.0", "0.000001").
    """
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    q = Decimal(int(value)).scaleb(-decimals)
    text = format(q, "f")
    if "." not in text:
        return text + ".0"
    whole, frac = text.split(".", 1)
    frac = frac.rstrip("0") or "0"
    return f"{whole}.{frac}"


def parse_units(amount: str | int | float | Decimal, decimals: int) -> int:
    """Convert a display amount (e.g. "0.01") into integer minor units."""
    return int((Decimal(str(amount)) * (Decimal(10) ** decimals)).to_integral_value())
