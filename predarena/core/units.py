"""Canonical money/quantity representation.

Venues and chains report amounts either as integer base units (6 decimals for
USDC and outcome tokens) or as decimal strings. Everything past an executor or
RPC client boundary is a ``Decimal``.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any

USDC_DECIMALS = 6
OUTCOME_TOKEN_DECIMALS = 6

ZERO = Decimal("0")
DEFAULT_TOLERANCE = Decimal("1e-6")


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return ZERO
    # str() first so floats keep their printed value instead of the binary one.
    return Decimal(str(value))


def from_base_units(raw: int | str, decimals: int = USDC_DECIMALS) -> Decimal:
    return Decimal(int(raw)).scaleb(-decimals)


def to_base_units(amount: Decimal, decimals: int = USDC_DECIMALS, *, rounding: str = ROUND_FLOOR) -> int:
    scaled = to_decimal(amount).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=rounding))


def round_units_down(qty: Decimal) -> Decimal:
    return to_decimal(qty).to_integral_value(rounding=ROUND_FLOOR)


def round_units_up(qty: Decimal) -> Decimal:
    return to_decimal(qty).to_integral_value(rounding=ROUND_CEILING)


def approx_equal(a: Decimal, b: Decimal, *, rel: Decimal = DEFAULT_TOLERANCE) -> bool:
    a, b = to_decimal(a), to_decimal(b)
    scale = max(abs(a), abs(b), Decimal(1))
    return abs(a - b) <= rel * scale
