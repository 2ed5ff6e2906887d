# rentbilling/services/balances.py
from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from ..domain.invoice_status import OPEN_STATUSES
from ..domain.money import ZERO, money, to_decimal
from ..models import Invoice, Payment, PaymentAllocation

PAYMENT_COMPLETED = "completed"


def allocated_sum(db: Session, invoice_id: int) -> Decimal:
    n = db.scalar(
        select(func.coalesce(func.sum(PaymentAllocation.amount), 0)).where(PaymentAllocation.invoice_id == int(invoice_id))
    )
    return money(n)


def settled_total(db: Session, invoice: Invoice) -> Decimal:
    """
    What counts against an invoice's charges: payment allocations plus any
    unpaid balance already carried into a later invoice.
    """
    if invoice.id is None:
        return money(invoice.carried_forward or 0)
    return money(allocated_sum(db, invoice.id) + to_decimal(invoice.carried_forward))


def tenant_credit(db: Session, tenant_id: int) -> Decimal:
    """Unapplied remainder of the tenant's completed payments."""
    n = db.scalar(
        select(func.coalesce(func.sum(Payment.unallocated_amount), 0)).where(
            Payment.tenant_id == int(tenant_id),
            Payment.status == PAYMENT_COMPLETED,
        )
    )
    return money(n)


def _credit_payments(db: Session, tenant_id: int, *, newest_first: bool = False) -> list[Payment]:
    q = (
        select(Payment)
        .where(Payment.tenant_id == int(tenant_id), Payment.status == PAYMENT_COMPLETED)
        # sessions keep objects past commit; credit must come from the current rows
        .execution_options(populate_existing=True)
    )
    if newest_first:
        q = q.order_by(Payment.payment_date.desc(), Payment.id.desc())
    else:
        q = q.order_by(Payment.payment_date.asc(), Payment.id.asc())
    return list(db.scalars(q).all())


def consume_credit(db: Session, tenant_id: int, amount: Decimal) -> Decimal:
    """
    Draw `amount` of tenant credit, oldest payment first.
    Returns what was actually drawn (never more than the credit available).
    """
    remaining = money(amount)
    drawn = ZERO
    if remaining <= 0:
        return ZERO

    for p in _credit_payments(db, tenant_id):
        avail = money(p.unallocated_amount)
        if avail <= 0:
            continue
        take = min(avail, remaining)
        p.unallocated_amount = money(avail - take)
        db.add(p)
        drawn += take
        remaining -= take
        if remaining <= 0:
            break
    return money(drawn)


def restore_credit(db: Session, tenant_id: int, amount: Decimal) -> Decimal:
    """
    Put previously drawn credit back on the tenant's payments, newest first,
    never exceeding what each payment has not already allocated.
    """
    remaining = money(amount)
    restored = ZERO
    if remaining <= 0:
        return ZERO

    for p in _credit_payments(db, tenant_id, newest_first=True):
        room = money(to_decimal(p.amount) - allocated_by_payment(db, p.id) - to_decimal(p.unallocated_amount))
        if room <= 0:
            continue
        put = min(room, remaining)
        p.unallocated_amount = money(to_decimal(p.unallocated_amount) + put)
        db.add(p)
        restored += put
        remaining -= put
        if remaining <= 0:
            break
    return money(restored)


def allocated_by_payment(db: Session, payment_id: int) -> Decimal:
    n = db.scalar(
        select(func.coalesce(func.sum(PaymentAllocation.amount), 0)).where(PaymentAllocation.payment_id == int(payment_id))
    )
    return money(n)


def outstanding_balance(db: Session, tenant_id: int) -> Decimal:
    n = db.scalar(
        select(func.coalesce(func.sum(Invoice.balance), 0)).where(
            Invoice.tenant_id == int(tenant_id),
            Invoice.status.in_(sorted(OPEN_STATUSES)),
        )
    )
    return money(n)
