from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from .money import ZERO, money, to_decimal

FEE_PERCENTAGE = "percentage"
FEE_FIXED_AMOUNT = "fixed_amount"
FEE_TYPES = {FEE_PERCENTAGE, FEE_FIXED_AMOUNT}


def _as_date(v: date | datetime) -> date:
    if isinstance(v, datetime):
        return v.date()
    return v


def _norm_fee_type(fee_type: Any) -> Optional[str]:
    if fee_type is None:
        return None
    s = str(getattr(fee_type, "value", fee_type)).strip().lower()
    return s if s in FEE_TYPES else None


def get_days_overdue(due_date: date | datetime, as_of: date | datetime) -> int:
    return max(0, (_as_date(as_of) - _as_date(due_date)).days)


def should_apply_late_fee(due_date: date | datetime, as_of: date | datetime, grace_period_days: int) -> bool:
    # grace period includes its last day
    return get_days_overdue(due_date, as_of) > max(0, int(grace_period_days or 0))


def calculate_late_fee(
    rent_amount: Any,
    due_date: date | datetime,
    as_of: date | datetime,
    grace_period_days: int,
    fee_type: Any,
    fee_percentage: Any = None,
    fee_amount: Any = None,
) -> Decimal:
    """
    Late fee owed as of `as_of`.

    - within the grace period (boundary day included) -> 0
    - percentage   -> rent_amount * fee_percentage / 100
    - fixed_amount -> fee_amount

    A policy missing the parameter its type needs yields 0.
    """
    if not should_apply_late_fee(due_date, as_of, grace_period_days):
        return ZERO

    kind = _norm_fee_type(fee_type)
    if kind == FEE_PERCENTAGE:
        if fee_percentage is None:
            return ZERO
        pct = to_decimal(fee_percentage)
        if pct <= 0:
            return ZERO
        return money(to_decimal(rent_amount) * pct / Decimal(100))

    if kind == FEE_FIXED_AMOUNT:
        if fee_amount is None:
            return ZERO
        amt = to_decimal(fee_amount)
        return money(amt) if amt > 0 else ZERO

    return ZERO


def tenant_late_fee(tenant: Any, base_amount: Any, due_date: date | datetime, as_of: date | datetime) -> Decimal:
    """calculate_late_fee using the policy stored on a Tenant row."""
    return calculate_late_fee(
        base_amount,
        due_date,
        as_of,
        int(getattr(tenant, "late_fee_grace_period_days", 0) or 0),
        getattr(tenant, "late_fee_type", None),
        fee_percentage=getattr(tenant, "late_fee_percentage", None),
        fee_amount=getattr(tenant, "late_fee_fixed_amount", None),
    )


def _days(n: int) -> str:
    return "1 day" if n == 1 else f"{n} days"


def _pct(v: Any) -> str:
    # 10.0000 -> "10", 12.5000 -> "12.5"
    s = f"{to_decimal(v):f}"
    return s.rstrip("0").rstrip(".") if "." in s else s


def describe_late_fee(
    tenant: Any,
    base_amount: Any,
    due_date: date | datetime,
    as_of: date | datetime,
    *,
    currency: str = "KES",
) -> str:
    grace = int(getattr(tenant, "late_fee_grace_period_days", 0) or 0)
    overdue = get_days_overdue(due_date, as_of)

    if overdue <= 0:
        return "No late fee - payment not overdue"

    if overdue <= grace:
        return f"Within {grace}-day grace period ({grace - overdue} days remaining)"

    fee = tenant_late_fee(tenant, base_amount, due_date, as_of)
    penalty_days = overdue - grace
    kind = _norm_fee_type(getattr(tenant, "late_fee_type", None))

    if fee <= 0:
        return f"No late fee configured ({penalty_days} days past grace period)"
    if kind == FEE_FIXED_AMOUNT:
        return f"Fixed late fee of {currency} {fee:,.2f} applied ({penalty_days} days past grace period)"
    pct = _pct(getattr(tenant, "late_fee_percentage", 0))
    return f"{pct}% late fee applied: {currency} {fee:,.2f} ({penalty_days} days past grace period)"


def describe_late_fee_policy(tenant: Any, *, currency: str = "KES") -> str:
    grace = _days(int(getattr(tenant, "late_fee_grace_period_days", 0) or 0))
    kind = _norm_fee_type(getattr(tenant, "late_fee_type", None))

    if kind == FEE_FIXED_AMOUNT and getattr(tenant, "late_fee_fixed_amount", None):
        return f"Late fee: {currency} {money(tenant.late_fee_fixed_amount):,.2f} after {grace} grace period"
    if kind == FEE_PERCENTAGE and getattr(tenant, "late_fee_percentage", None):
        pct = _pct(tenant.late_fee_percentage)
        return f"Late fee: {pct}% of rent after {grace} grace period"
    return "No late fee"
