# rentbilling/domain/invoice_status.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from .money import ZERO, money, to_decimal


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PARTIALLY_PAID = "partially_paid"
    OVERDUE = "overdue"
    PAID = "paid"
    VOID = "void"


# Statuses that still accept allocations / can go overdue
OPEN_STATUSES = {
    InvoiceStatus.DRAFT.value,
    InvoiceStatus.ISSUED.value,
    InvoiceStatus.PARTIALLY_PAID.value,
    InvoiceStatus.OVERDUE.value,
}


def _as_date(v: date | datetime) -> date:
    if isinstance(v, datetime):
        return v.date()
    return v


def _status(invoice: Any) -> str:
    return str(getattr(invoice.status, "value", invoice.status) or "").lower()


def calculate_balance(invoice: Any, allocated_total: Any) -> Decimal:
    total = to_decimal(invoice.amount) + to_decimal(invoice.opening_balance)
    return money(max(ZERO, total - to_decimal(allocated_total)))


def calculate_status(invoice: Any, allocated_total: Any, as_of: date | datetime) -> str:
    """
    Decision order (first match wins):
      void stays void -> nothing owed is paid -> past due is overdue
      -> something allocated is partially_paid -> draft stays draft, else issued

    Overdue deliberately wins over partially_paid.
    """
    current = _status(invoice)
    if current == InvoiceStatus.VOID.value:
        return InvoiceStatus.VOID.value

    if calculate_balance(invoice, allocated_total) <= 0:
        return InvoiceStatus.PAID.value

    if _as_date(invoice.due_date) < _as_date(as_of):
        return InvoiceStatus.OVERDUE.value

    if to_decimal(allocated_total) > 0:
        return InvoiceStatus.PARTIALLY_PAID.value

    if current == InvoiceStatus.DRAFT.value:
        return InvoiceStatus.DRAFT.value
    return InvoiceStatus.ISSUED.value


def apply(invoice: Any, allocated_total: Any, as_of: date | datetime) -> bool:
    """
    Recompute balance + status in place.
    Returns True if either changed so callers can skip a redundant write.
    """
    new_balance = calculate_balance(invoice, allocated_total)
    new_status = calculate_status(invoice, allocated_total, as_of)

    old_balance = money(invoice.balance) if invoice.balance is not None else None
    changed = old_balance != new_balance or _status(invoice) != new_status

    invoice.balance = new_balance
    invoice.status = new_status
    return changed
