from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(v: Any) -> Decimal:
    """
    Coerce a DB/JSON value into Decimal without passing through binary float.

    Floats are converted via their repr so 0.1 stays 0.1.
    """
    if v is None:
        return ZERO
    if isinstance(v, Decimal):
        return v
    if isinstance(v, float):
        return Decimal(repr(v))
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"not a monetary value: {v!r}") from e


def money(v: Any) -> Decimal:
    """Round to cents, half-up (the way receipts are printed)."""
    return to_decimal(v).quantize(CENT, rounding=ROUND_HALF_UP)
