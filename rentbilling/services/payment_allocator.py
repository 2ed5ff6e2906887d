# rentbilling/services/payment_allocator.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..domain.audit import payment_snapshot, record_billing_event
from ..domain.invoice_status import OPEN_STATUSES, apply
from ..domain.money import ZERO, money, to_decimal
from ..errors import AllocationFailed, Conflict, InvalidArgument, NotFound
from ..models import Invoice, Payment, PaymentAllocation
from .balances import PAYMENT_COMPLETED, allocated_by_payment, settled_total
from .notifier import LoggingNotifier, Notifier, notify_payment_confirmed
from .retry import backoff_seconds, is_transient
from .runtime_metrics import METRICS
from .tenant_locks import tenant_allocation_lock

log = logging.getLogger(__name__)

# A lost race on the tenant's invoice rows; re-read and go again
CONFLICT_ERRORS = (StaleDataError, IntegrityError)


@dataclass
class AllocationResult:
    payment_id: int
    allocations: list[tuple[int, Decimal]] = field(default_factory=list)
    unallocated: Decimal = ZERO
    already_allocated: bool = False

    @property
    def applied(self) -> Decimal:
        return money(sum((a for _, a in self.allocations), ZERO))

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "allocations": [{"invoice_id": i, "amount": a} for i, a in self.allocations],
            "applied": self.applied,
            "unallocated": self.unallocated,
            "already_allocated": self.already_allocated,
        }


def open_invoices(db: Session, tenant_id: int) -> list[Invoice]:
    """Invoices that can still absorb money, oldest due date first."""
    q = (
        select(Invoice)
        .where(Invoice.tenant_id == int(tenant_id), Invoice.status.in_(sorted(OPEN_STATUSES)))
        .order_by(Invoice.due_date.asc(), Invoice.period_start.asc(), Invoice.id.asc())
    )
    return list(db.scalars(q).all())


def _allocate_once(db: Session, payment_id: int, as_of: date) -> AllocationResult:
    payment = db.get(Payment, int(payment_id))
    if payment is None:
        raise NotFound(f"payment {payment_id} not found")

    with tenant_allocation_lock(db, payment.tenant_id):
        # fresh state: another allocation may have committed while we waited
        db.refresh(payment)

        if payment.status != PAYMENT_COMPLETED:
            raise InvalidArgument(f"payment {payment.id} is {payment.status}; only completed payments allocate")

        if payment.confirmed_at is not None:
            # allocating twice would double-credit the tenant
            return AllocationResult(
                payment_id=payment.id,
                allocations=[(a.invoice_id, money(a.amount)) for a in payment.allocations],
                unallocated=money(payment.unallocated_amount),
                already_allocated=True,
            )

        before = payment_snapshot(payment)
        remaining = money(payment.amount)
        result = AllocationResult(payment_id=payment.id)
        now = datetime.utcnow()

        for inv in open_invoices(db, payment.tenant_id):
            if remaining <= 0:
                break

            settled = settled_total(db, inv)
            due = money(to_decimal(inv.amount) + to_decimal(inv.opening_balance) - settled)
            if due <= 0:
                continue

            applied = min(due, remaining)
            db.add(PaymentAllocation(payment_id=payment.id, invoice_id=inv.id, amount=applied, created_at=now))

            apply(inv, settled + applied, as_of)
            inv.updated_at = now
            db.add(inv)

            remaining = money(remaining - applied)
            result.allocations.append((int(inv.id), applied))

        payment.unallocated_amount = remaining
        payment.updated_at = now
        payment.confirmed_at = now
        db.add(payment)
        result.unallocated = remaining

        record_billing_event(
            db, payment, "payment.allocate", before=before, allocations=result.to_dict()["allocations"]
        )

        # commit inside the lock: the advisory lock ends with this transaction
        db.commit()
        return result


def allocate_payment(
    db: Session,
    payment_id: int,
    *,
    notifier: Optional[Notifier] = None,
    as_of: Optional[date] = None,
    max_attempts: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AllocationResult:
    """
    Spread a completed payment across the tenant's open invoices, oldest due
    date first. Whatever is left stays on the payment as tenant credit.

    All-or-nothing: the allocation records, invoice balances and the payment's
    remainder commit together or not at all. Conflicts (stale invoice version,
    duplicate rows) and transient DB errors roll back and start over from a
    fresh read; once attempts run out AllocationFailed is raised and nothing
    has been applied.

    Notifications go out after commit; a broken notifier never undoes money.
    """
    as_of = as_of or date.today()
    attempts = max(1, int(max_attempts if max_attempts is not None else settings.allocation_max_attempts))

    last_err: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            with METRICS.timed("allocations.attempt"):
                result = _allocate_once(db, payment_id, as_of)
            break
        except (InvalidArgument, NotFound):
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            if not (isinstance(e, CONFLICT_ERRORS) or is_transient(e)):
                raise
            last_err = e
            METRICS.inc("allocations.conflict")
            log.warning(
                "allocation attempt failed, rolled back: %s",
                type(e).__name__,
                extra={"payment_id": payment_id, "attempt": attempt},
            )
            if attempt < attempts:
                sleep(backoff_seconds(attempt - 1))
    else:
        METRICS.inc("allocations.failed")
        raise AllocationFailed(
            f"allocation of payment {payment_id} failed after {attempts} attempts",
            details={"payment_id": payment_id, "last_error": type(last_err).__name__ if last_err else None},
        )

    if not result.already_allocated:
        METRICS.inc("allocations.applied", len(result.allocations))
        payment = db.get(Payment, int(payment_id))
        notify_payment_confirmed(
            notifier or LoggingNotifier(),
            tenant_id=payment.tenant_id,
            allocations=result.allocations,
        )

    log.info(
        "payment allocated to %d invoices, %s left as credit",
        len(result.allocations),
        result.unallocated,
        extra={"payment_id": payment_id},
    )
    return result


def credit_drawn_from(db: Session, payment: Payment) -> Decimal:
    """Part of an allocated payment that has since been folded into invoices as credit."""
    if payment.confirmed_at is None:
        return ZERO
    held = allocated_by_payment(db, payment.id) + to_decimal(payment.unallocated_amount)
    return max(ZERO, money(to_decimal(payment.amount) - held))


def reverse_allocations(db: Session, payment_id: int, *, as_of: Optional[date] = None) -> list[int]:
    """
    Remove a payment's allocations and recompute the invoices they touched.
    Used on refund. Does not commit; the caller owns the transaction.
    Returns the affected invoice ids.

    Credit from this payment that a later invoice already drew as its
    "Prepaid credit" opening line cannot be taken back here: that raises
    Conflict until the invoice holding it is voided, which returns the credit.
    """
    as_of = as_of or date.today()
    payment = db.get(Payment, int(payment_id))
    if payment is None:
        raise NotFound(f"payment {payment_id} not found")

    touched: list[int] = []
    with tenant_allocation_lock(db, payment.tenant_id):
        db.refresh(payment)
        drawn = credit_drawn_from(db, payment)
        if drawn > 0:
            raise Conflict(
                f"{drawn} of payment {payment.id} was applied as credit to a later invoice; void that invoice first",
                details={"payment_id": payment.id, "credit_drawn": drawn},
            )

        for alloc in list(payment.allocations):
            touched.append(int(alloc.invoice_id))
            payment.allocations.remove(alloc)
        payment.unallocated_amount = ZERO
        db.flush()

        for inv_id in sorted(set(touched)):
            inv = db.get(Invoice, inv_id)
            if inv is None:
                continue
            db.expire(inv, ["allocations"])
            # paid reopens on its own once the money is withdrawn; void stays void
            apply(inv, settled_total(db, inv), as_of)
            inv.updated_at = datetime.utcnow()
            db.add(inv)

    return sorted(set(touched))


def allocate_unconfirmed_payments(
    db: Session,
    *,
    org_id: Optional[int] = None,
    as_of: Optional[date] = None,
    notifier: Optional[Notifier] = None,
) -> dict[str, int]:
    """
    Retry completed payments whose allocation never committed.

    A payment that still fails stays unconfirmed for the next run and is
    counted under "failed".
    """
    q = select(Payment.id).where(Payment.status == PAYMENT_COMPLETED, Payment.confirmed_at.is_(None))
    if org_id is not None:
        q = q.where(Payment.org_id == int(org_id))
    ids = [int(x) for x in db.scalars(q.order_by(Payment.payment_date.asc(), Payment.id.asc())).all()]

    out = {"allocated": 0, "failed": 0}
    for pid in ids:
        try:
            allocate_payment(db, pid, notifier=notifier, as_of=as_of)
        except AllocationFailed:
            out["failed"] += 1
            log.warning("allocation retry failed, payment left unconfirmed", extra={"payment_id": pid})
            continue
        out["allocated"] += 1
    if ids:
        log.info(
            "re-allocated %d unconfirmed payments, %d still failing",
            out["allocated"],
            out["failed"],
            extra={"org_id": org_id},
        )
    return out
