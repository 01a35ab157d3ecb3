"""Decimal helpers for monetary values (2 places, half-up like the storefront's legacy pricing)."""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
Number = Union[Decimal, float, int, str]


def to_decimal(value: Number | None) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # str() first so 9.99 does not turn into 9.9900000000000002131628...
    return Decimal(str(value))


def round_money(value: Number | None) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_to_float(value: Number | None) -> float | None:
    if value is None:
        return None
    return float(round_money(value))
