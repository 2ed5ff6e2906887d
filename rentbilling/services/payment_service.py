# rentbilling/services/payment_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..domain.audit import payment_snapshot, record_billing_event
from ..domain.money import money
from ..errors import Conflict, InvalidArgument, NotFound
from ..models import Payment, Tenant, Unit
from .ownership import must_get_payment, must_get_tenant
from .notifier import Notifier
from .payment_allocator import AllocationResult, allocate_payment, reverse_allocations

log = logging.getLogger(__name__)

PAYMENT_METHODS = {"cash", "mpesa", "bank_transfer", "cheque", "other"}
PAYMENT_STATUSES = {"pending", "completed", "failed", "refunded"}

# from -> allowed targets
TRANSITIONS = {
    "pending": {"completed", "failed", "refunded"},
    "completed": {"refunded"},
    "failed": set(),
    "refunded": set(),
}


@dataclass
class RecordedPayment:
    payment: Payment
    allocation: Optional[AllocationResult]
    created: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment.id,
            "status": self.payment.status,
            "created": self.created,
            "allocation": self.allocation.to_dict() if self.allocation is not None else None,
        }


def _norm_reference(ref: Optional[str]) -> Optional[str]:
    s = (ref or "").strip()
    return s or None


def _find_by_reference(db: Session, org_id: int, ref: str) -> Optional[Payment]:
    return db.scalar(select(Payment).where(Payment.org_id == int(org_id), Payment.transaction_reference == ref))


def _validate(amount: Any, method: str, status: str) -> Decimal:
    try:
        amt = money(amount)
    except ValueError as e:
        raise InvalidArgument(str(e)) from e
    if amt <= 0:
        raise InvalidArgument("payment amount must be positive")
    if method not in PAYMENT_METHODS:
        raise InvalidArgument(f"unknown payment method {method!r}")
    if status not in ("pending", "completed"):
        raise InvalidArgument("a new payment is either pending or completed")
    return amt


def record_payment(
    db: Session,
    *,
    org_id: int,
    tenant_id: int,
    amount: Any,
    payment_date: Optional[date] = None,
    method: str = "cash",
    transaction_reference: Optional[str] = None,
    status: str = "completed",
    notes: Optional[str] = None,
    actor_user_id: Optional[int] = None,
    notifier: Optional[Notifier] = None,
    as_of: Optional[date] = None,
) -> RecordedPayment:
    """
    Record a receipt and, when it is already completed, allocate it.

    The payment row commits before allocation. If allocation raises
    AllocationFailed the payment stays completed but unconfirmed until a later
    attempt allocates it (`update_payment_status` or the overdue sweep via
    `allocate_unconfirmed_payments`).

    A transaction reference seen before returns the existing payment instead
    of a second one (gateways redeliver callbacks). If that earlier attempt
    never finished allocating, allocation is retried here.
    """
    method = (method or "cash").strip().lower()
    status = (status or "completed").strip().lower()
    amt = _validate(amount, method, status)
    ref = _norm_reference(transaction_reference)

    tenant = must_get_tenant(db, org_id=org_id, tenant_id=tenant_id)

    if ref is not None:
        existing = _find_by_reference(db, org_id, ref)
        if existing is not None:
            return _replay(db, existing, tenant_id=tenant.id, amount=amt, notifier=notifier, as_of=as_of)

    now = datetime.utcnow()
    row = Payment(
        org_id=int(org_id),
        tenant_id=tenant.id,
        unit_id=tenant.unit_id,
        amount=amt,
        unallocated_amount=0,
        payment_date=payment_date or date.today(),
        method=method,
        transaction_reference=ref,
        status=status,
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    try:
        db.flush()
        record_billing_event(db, row, "payment.record", actor_user_id=actor_user_id)
        db.commit()
    except IntegrityError:
        # same reference recorded concurrently
        db.rollback()
        existing = _find_by_reference(db, org_id, ref) if ref is not None else None
        if existing is None:
            raise
        return _replay(db, existing, tenant_id=tenant.id, amount=amt, notifier=notifier, as_of=as_of)

    log.info("payment recorded", extra={"payment_id": row.id, "tenant_id": tenant.id, "org_id": org_id})

    allocation = None
    if row.status == "completed":
        allocation = allocate_payment(db, row.id, notifier=notifier, as_of=as_of)
    return RecordedPayment(payment=row, allocation=allocation, created=True)


def _replay(
    db: Session,
    existing: Payment,
    *,
    tenant_id: int,
    amount: Decimal,
    notifier: Optional[Notifier],
    as_of: Optional[date],
) -> RecordedPayment:
    if int(existing.tenant_id) != int(tenant_id) or money(existing.amount) != amount:
        raise Conflict(
            f"transaction reference {existing.transaction_reference!r} already used for a different payment",
            details={"payment_id": existing.id},
        )

    allocation = None
    if existing.status == "completed":
        # no-op when already allocated
        allocation = allocate_payment(db, existing.id, notifier=notifier, as_of=as_of)
    log.info("duplicate transaction reference, returning existing payment", extra={"payment_id": existing.id})
    return RecordedPayment(payment=existing, allocation=allocation, created=False)


def update_payment_status(
    db: Session,
    payment_id: int,
    *,
    org_id: int,
    new_status: str,
    actor_user_id: Optional[int] = None,
    notifier: Optional[Notifier] = None,
    as_of: Optional[date] = None,
) -> RecordedPayment:
    """
    pending   -> completed  allocates
    pending   -> failed     holds nothing, nothing to undo
    pending   -> refunded   nothing was allocated
    completed -> refunded   allocations are reversed and invoices recomputed

    Re-applying `completed` to a payment whose allocation failed earlier
    (AllocationFailed left it unconfirmed) retries the allocation.
    """
    target = (new_status or "").strip().lower()
    if target not in PAYMENT_STATUSES:
        raise InvalidArgument(f"unknown payment status {new_status!r}")

    row = must_get_payment(db, org_id=org_id, payment_id=payment_id)
    if row.status == target:
        allocation = None
        if target == "completed" and row.confirmed_at is None:
            allocation = allocate_payment(db, row.id, notifier=notifier, as_of=as_of)
        return RecordedPayment(payment=row, allocation=allocation, created=False)
    if target not in TRANSITIONS.get(row.status, set()):
        raise InvalidArgument(f"payment {row.id} cannot move from {row.status} to {target}")

    before = payment_snapshot(row)
    was = row.status
    now = datetime.utcnow()

    if was == "completed" and target == "refunded":
        touched = reverse_allocations(db, row.id, as_of=as_of)
        log.info("payment refunded, %d invoices reopened", len(touched), extra={"payment_id": row.id})

    row.status = target
    row.updated_at = now
    db.add(row)
    record_billing_event(db, row, f"payment.{target}", actor_user_id=actor_user_id, before=before)
    db.commit()

    allocation = None
    if target == "completed":
        allocation = allocate_payment(db, row.id, notifier=notifier, as_of=as_of)
    return RecordedPayment(payment=row, allocation=allocation, created=False)


def resolve_tenant_by_account_reference(db: Session, *, org_id: int, account_reference: str) -> Tenant:
    """
    Match the account reference tenants quote on paybill/bank transfers
    (their unit number) to the single active tenant in that unit.
    """
    ref = (account_reference or "").strip().lower()
    if not ref:
        raise InvalidArgument("account reference is required")

    rows = list(
        db.scalars(
            select(Tenant)
            .join(Unit, Unit.id == Tenant.unit_id)
            .where(
                Tenant.org_id == int(org_id),
                Tenant.status == "active",
                func.lower(Unit.unit_number) == ref,
            )
            .order_by(Tenant.id.asc())
        ).all()
    )
    if not rows:
        raise NotFound(f"no active tenant for account reference {account_reference!r}")
    if len(rows) > 1:
        raise InvalidArgument(
            f"account reference {account_reference!r} matches {len(rows)} tenants",
            details={"tenant_ids": [t.id for t in rows]},
        )
    return rows[0]


def record_webhook_payment(
    db: Session,
    *,
    org_id: int,
    account_reference: str,
    amount: Any,
    transaction_reference: str,
    payment_date: Optional[date] = None,
    method: str = "mpesa",
    notifier: Optional[Notifier] = None,
    as_of: Optional[date] = None,
) -> RecordedPayment:
    """Gateway callback: funds already settled, so the payment is recorded completed."""
    amt = _validate(amount, (method or "mpesa").strip().lower(), "completed")
    ref = _norm_reference(transaction_reference)
    if ref is None:
        raise InvalidArgument("gateway callbacks must carry a transaction reference")

    existing = _find_by_reference(db, org_id, ref)
    if existing is not None:
        # a redelivery must not depend on the unit still having an active tenant
        return _replay(db, existing, tenant_id=existing.tenant_id, amount=amt, notifier=notifier, as_of=as_of)

    tenant = resolve_tenant_by_account_reference(db, org_id=org_id, account_reference=account_reference)
    return record_payment(
        db,
        org_id=org_id,
        tenant_id=tenant.id,
        amount=amt,
        payment_date=payment_date,
        method=method,
        transaction_reference=ref,
        status="completed",
        notes=f"gateway callback, account {account_reference}",
        notifier=notifier,
        as_of=as_of,
    )
