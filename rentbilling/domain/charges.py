from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .money import money, to_decimal

LINE_RENT = "rent"
LINE_UTILITY = "utility"
LINE_FEE = "fee"
LINE_OPENING_BALANCE = "opening_balance"


@dataclass(frozen=True)
class LineDraft:
    """A charge line before it is attached to an invoice row."""

    line_type: str
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal
    unit_of_measure: Optional[str] = None
    utility_config_id: Optional[int] = None

    @classmethod
    def priced(
        cls,
        line_type: str,
        description: str,
        quantity,
        rate,
        *,
        unit_of_measure: Optional[str] = None,
        utility_config_id: Optional[int] = None,
    ) -> "LineDraft":
        q = to_decimal(quantity)
        r = to_decimal(rate)
        return cls(
            line_type=line_type,
            description=description,
            quantity=q,
            rate=r,
            amount=money(q * r),
            unit_of_measure=unit_of_measure,
            utility_config_id=utility_config_id,
        )

    @classmethod
    def carried(cls, description: str, amount) -> "LineDraft":
        # opening balance is copied verbatim, never re-priced
        a = money(amount)
        return cls(
            line_type=LINE_OPENING_BALANCE,
            description=description,
            quantity=Decimal("1"),
            rate=a,
            amount=a,
        )


def base_amount(lines: list[LineDraft]) -> Decimal:
    """Invoice amount: every line except the carried opening balance."""
    return money(sum((l.amount for l in lines if l.line_type != LINE_OPENING_BALANCE), Decimal("0")))
