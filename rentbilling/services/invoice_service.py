# rentbilling/services/invoice_service.py
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import select, desc
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..auth import Principal
from ..config import settings
from ..domain.audit import invoice_snapshot, record_billing_event
from ..domain.invoice_status import OPEN_STATUSES, InvoiceStatus, apply
from ..domain.late_fees import describe_late_fee_policy
from ..domain.money import ZERO, money, to_decimal
from ..errors import Conflict, Forbidden, InvalidArgument
from ..models import Invoice, Payment
from .balances import outstanding_balance, restore_credit, settled_total, tenant_credit
from .invoice_generator import prior_invoice
from .ownership import must_get_invoice, must_get_tenant
from .runtime_metrics import METRICS
from .tenant_locks import tenant_allocation_lock

log = logging.getLogger(__name__)


def _check_tenant_scope(p: Principal, tenant_id: int) -> None:
    if p.is_tenant and int(p.tenant_id or 0) != int(tenant_id):
        raise Forbidden("tenants may only view their own invoices")


def get_invoice(db: Session, invoice_id: int, principal: Principal) -> Invoice:
    """
    Another org's invoice is indistinguishable from a missing one (NotFound);
    a tenant reading a neighbour's invoice in the same org gets Forbidden.
    """
    inv = must_get_invoice(db, org_id=principal.org_id, invoice_id=invoice_id)
    _check_tenant_scope(principal, inv.tenant_id)
    return inv


def list_invoices(
    db: Session,
    principal: Principal,
    *,
    tenant_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> list[Invoice]:
    q = select(Invoice).where(Invoice.org_id == principal.org_id)

    if principal.is_tenant:
        if tenant_id is not None:
            _check_tenant_scope(principal, tenant_id)
        q = q.where(Invoice.tenant_id == int(principal.tenant_id))
    elif tenant_id is not None:
        must_get_tenant(db, org_id=principal.org_id, tenant_id=tenant_id)
        q = q.where(Invoice.tenant_id == int(tenant_id))

    if status:
        s = status.strip().lower()
        if s not in {x.value for x in InvoiceStatus}:
            raise InvalidArgument(f"unknown invoice status {status!r}")
        q = q.where(Invoice.status == s)

    q = q.order_by(desc(Invoice.period_start), desc(Invoice.id)).limit(int(limit))
    return list(db.scalars(q).all())


def recalculate_invoice(
    db: Session,
    invoice_id: int,
    *,
    org_id: int,
    as_of: Optional[date] = None,
    attempts: int = 3,
) -> tuple[Invoice, bool]:
    """
    Re-derive balance + status from the stored allocations (manual overdue
    sweep for one invoice). Lost version races are retried from a fresh read.
    Returns (invoice, changed).
    """
    as_of = as_of or date.today()

    for attempt in range(1, max(1, attempts) + 1):
        inv = must_get_invoice(db, org_id=org_id, invoice_id=invoice_id)
        db.refresh(inv)
        try:
            changed = apply(inv, settled_total(db, inv), as_of)
            if changed:
                inv.updated_at = datetime.utcnow()
                db.add(inv)
                db.commit()
            return inv, changed
        except StaleDataError:
            db.rollback()
            METRICS.inc("invoices.recalc_conflict")
            log.info("invoice changed during recalculation, re-reading", extra={"invoice_id": invoice_id, "attempt": attempt})

    raise Conflict(f"invoice {invoice_id} kept changing during recalculation")


def sweep_overdue_invoices(db: Session, *, as_of: Optional[date] = None, org_id: Optional[int] = None) -> int:
    """
    Time alone turns issued/partially_paid into overdue; re-apply the status
    calculator to every open invoice whose due date has passed.
    Returns the number of invoices that changed.
    """
    as_of = as_of or date.today()
    q = select(Invoice.id, Invoice.org_id).where(
        Invoice.status.in_(sorted(OPEN_STATUSES - {InvoiceStatus.OVERDUE.value})),
        Invoice.due_date < as_of,
    )
    if org_id is not None:
        q = q.where(Invoice.org_id == int(org_id))

    changed = 0
    for inv_id, inv_org in db.execute(q.order_by(Invoice.id.asc())).all():
        try:
            _, did = recalculate_invoice(db, int(inv_id), org_id=int(inv_org), as_of=as_of)
        except Conflict:
            log.warning("skipping invoice that kept changing", extra={"invoice_id": inv_id})
            continue
        if did:
            changed += 1

    METRICS.inc("invoices.overdue_swept", changed)
    log.info("overdue sweep updated %d invoices", changed, extra={"org_id": org_id})
    return changed


def void_invoice(
    db: Session,
    invoice_id: int,
    *,
    org_id: int,
    actor_user_id: Optional[int],
    reason: Optional[str] = None,
    as_of: Optional[date] = None,
) -> Invoice:
    """
    Landlord action; only from a non-paid, non-void state.

    Money already on the invoice goes back to tenant credit. Balance carried
    in from the prior invoice returns to that invoice, and credit that was
    folded into the opening balance is put back on the payments.
    """
    as_of = as_of or date.today()
    inv = must_get_invoice(db, org_id=org_id, invoice_id=invoice_id)

    if to_decimal(inv.carried_forward) > 0:
        raise Conflict(f"invoice {inv.id} balance was carried into a later invoice; void that one first")
    if inv.status not in OPEN_STATUSES:
        raise InvalidArgument(f"invoice {inv.id} is {inv.status} and cannot be voided")

    before = invoice_snapshot(inv)

    with tenant_allocation_lock(db, inv.tenant_id):
        db.refresh(inv)
        returned = ZERO
        for alloc in list(inv.allocations):
            pay = db.get(Payment, alloc.payment_id)
            pay.unallocated_amount = money(to_decimal(pay.unallocated_amount) + to_decimal(alloc.amount))
            db.add(pay)
            returned += to_decimal(alloc.amount)
            db.delete(alloc)
            db.expire(pay, ["allocations"])
        db.flush()
        db.expire(inv, ["allocations"])

        prior = prior_invoice(db, inv.tenant_id, inv.period_start)
        carried_in = money(prior.carried_forward) if prior is not None else ZERO
        credit_drawn = max(ZERO, money(carried_in - to_decimal(inv.opening_balance)))

        if prior is not None and carried_in > 0:
            prior.carried_forward = ZERO
            db.flush()
            apply(prior, settled_total(db, prior), as_of)
            prior.updated_at = datetime.utcnow()
            db.add(prior)

        restored = restore_credit(db, inv.tenant_id, credit_drawn) if credit_drawn > 0 else ZERO

        inv.status = InvoiceStatus.VOID.value
        inv.balance = ZERO
        if reason:
            inv.notes = f"{inv.notes}\n{reason}" if inv.notes else reason
        inv.updated_at = datetime.utcnow()
        db.add(inv)

        record_billing_event(
            db,
            inv,
            "invoice.void",
            actor_user_id=actor_user_id,
            before=before,
            returned_to_credit=money(returned),
            carried_back=carried_in,
            credit_restored=restored,
        )
        db.commit()

    log.info("invoice voided", extra={"invoice_id": inv.id, "tenant_id": inv.tenant_id})
    return inv


def tenant_balance(db: Session, tenant_id: int, principal: Principal) -> dict[str, Any]:
    _check_tenant_scope(principal, tenant_id)
    tenant = must_get_tenant(db, org_id=principal.org_id, tenant_id=tenant_id)

    owed = outstanding_balance(db, tenant.id)
    credit = tenant_credit(db, tenant.id)
    return {
        "tenant_id": tenant.id,
        "outstanding": owed,
        "credit": credit,
        "net": money(owed - credit),
        "currency": settings.currency_code,
        "late_fee_policy": describe_late_fee_policy(tenant, currency=settings.currency_code),
    }
