"""Money conversion helpers using fixed micro-dollar precision."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


MICROS_PER_USD = 1_000_000
_USD_QUANT = Decimal("0.000001")

# Ceiling strings are always "$" + digits + up to two decimals.
LIMIT_FORMAT_RE = re.compile(r"^\$\d+(\.\d{1,2})?$")


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Parse a plain or $-prefixed amount into a finite Decimal."""
    raw = str(value).strip()
    if raw.startswith("$"):
        raw = raw[1:]
    try:
        dec = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not dec.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return dec


def amount_usd_to_micros(value: Decimal | float | int | str) -> int:
    """Convert spend amount to micro-dollars, rounding up (conservative)."""
    dec = to_decimal(value).quantize(_USD_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_USD)


def limit_usd_to_micros(value: Decimal | float | int | str) -> int:
    """Convert spending ceiling to micro-dollars, rounding down (conservative)."""
    dec = to_decimal(value).quantize(_USD_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_USD)


def micros_to_usd_decimal(value: int) -> Decimal:
    return (Decimal(value) / Decimal(MICROS_PER_USD)).quantize(_USD_QUANT)


def format_usd_from_micros(value: int) -> str:
    """Format integer micro-dollars as a currency string."""
    return f"${micros_to_usd_decimal(value):.2f}"


def is_valid_limit(value: str) -> bool:
    return bool(LIMIT_FORMAT_RE.match(value))


def parse_usd(value: str) -> Decimal:
    """Parse a "$X.XX" ceiling string."""
    if not isinstance(value, str) or not is_valid_limit(value):
        raise ValueError(f"Invalid monetary format: {value!r} (expected $X.XX)")
    return Decimal(value[1:])


def base_units_to_decimal(amount: int | str, decimals: int) -> Decimal:
    """Scale an integer base-unit amount by the asset's decimals."""
    return Decimal(int(amount)).scaleb(-decimals)


def decimal_to_base_units(amount: Decimal | str, decimals: int) -> int:
    """Inverse of base_units_to_decimal, rounding up to the next base unit."""
    scaled = to_decimal(amount).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_CEILING))


def format_amount(value: Decimal) -> str:
    """
    Render a decimal amount for display.

    At least two fractional digits; smaller significant digits are kept,
    so 0.25 -> "0.25", 1 -> "1.00", 0.000001 -> "0.000001".
    """
    text = format(value.normalize(), "f")
    whole, _, frac = text.partition(".")
    frac = frac.rstrip("0")
    if len(frac) < 2:
        frac = frac.ljust(2, "0")
    return f"{whole}.{frac}"
