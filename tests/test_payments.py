from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from rentbilling.errors import AllocationFailed, Conflict, InvalidArgument, NotFound, TransientError
from rentbilling.models import Invoice, Payment, PaymentAllocation
from rentbilling.services.balances import outstanding_balance, tenant_credit
from rentbilling.services.invoice_generator import generate_monthly_invoices
from rentbilling.services.invoice_service import void_invoice
from rentbilling.services.payment_allocator import allocate_unconfirmed_payments
from rentbilling.services.payment_service import (
    record_payment,
    record_webhook_payment,
    update_payment_status,
)
from rentbilling.services.utility_billing import NoUtilityBilling

AS_OF = date(2026, 3, 2)


@pytest.fixture
def billed(db, org, make_tenant):
    t = make_tenant(rent="5000", due_day=5, unit_number="B12")
    generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())
    inv = db.scalar(select(Invoice).where(Invoice.tenant_id == t.id))
    return t, inv


def _count(db, model):
    return db.scalar(select(func.count(model.id)))


def test_recording_a_completed_payment_allocates_it(db, org, billed):
    t, inv = billed

    rec = record_payment(db, org_id=org.id, tenant_id=t.id, amount="2000", transaction_reference="QX1", as_of=AS_OF)

    assert rec.created is True
    assert rec.allocation.allocations == [(inv.id, Decimal("2000.00"))]
    db.refresh(inv)
    assert inv.status == "partially_paid"


def test_duplicate_reference_returns_the_first_payment(db, org, billed):
    t, inv = billed

    first = record_payment(db, org_id=org.id, tenant_id=t.id, amount="2000", transaction_reference="QX1", as_of=AS_OF)
    second = record_payment(db, org_id=org.id, tenant_id=t.id, amount="2000.00", transaction_reference=" QX1 ", as_of=AS_OF)

    assert second.created is False
    assert second.payment.id == first.payment.id
    assert second.allocation.already_allocated is True
    assert _count(db, Payment) == 1
    assert _count(db, PaymentAllocation) == 1
    db.refresh(inv)
    assert inv.balance == Decimal("3000.00")


def test_reused_reference_for_another_amount_is_a_conflict(db, org, billed):
    t, _ = billed
    record_payment(db, org_id=org.id, tenant_id=t.id, amount="2000", transaction_reference="QX1", as_of=AS_OF)

    with pytest.raises(Conflict):
        record_payment(db, org_id=org.id, tenant_id=t.id, amount="2500", transaction_reference="QX1", as_of=AS_OF)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"amount": "-10"},
        {"amount": "0"},
        {"amount": "ten"},
        {"amount": "100", "method": "bitcoin"},
        {"amount": "100", "status": "refunded"},
    ],
)
def test_invalid_payments_are_rejected(db, org, billed, kwargs):
    t, _ = billed
    with pytest.raises(InvalidArgument):
        record_payment(db, org_id=org.id, tenant_id=t.id, **kwargs)
    assert _count(db, Payment) == 0


def test_unknown_tenant_is_not_found(db, org, billed):
    with pytest.raises(NotFound):
        record_payment(db, org_id=org.id, tenant_id=9999, amount="100")


def test_pending_payment_allocates_once_completed(db, org, billed):
    t, inv = billed
    rec = record_payment(db, org_id=org.id, tenant_id=t.id, amount="5000", status="pending", as_of=AS_OF)
    assert rec.allocation is None
    db.refresh(inv)
    assert inv.balance == Decimal("5000.00")

    done = update_payment_status(db, rec.payment.id, org_id=org.id, new_status="completed", as_of=AS_OF)

    assert done.allocation.allocations == [(inv.id, Decimal("5000.00"))]
    db.refresh(inv)
    assert inv.status == "paid"


def test_refund_reverses_allocations_and_reopens_invoice(db, org, billed):
    t, inv = billed
    rec = record_payment(db, org_id=org.id, tenant_id=t.id, amount="6000", transaction_reference="QX9", as_of=AS_OF)
    assert tenant_credit(db, t.id) == Decimal("1000.00")

    update_payment_status(db, rec.payment.id, org_id=org.id, new_status="refunded", as_of=AS_OF)

    assert _count(db, PaymentAllocation) == 0
    db.refresh(inv)
    assert inv.balance == Decimal("5000.00")
    assert inv.status == "issued"
    assert tenant_credit(db, t.id) == Decimal("0.00")


def _april(db, t):
    generate_monthly_invoices(db, 2026, 4, as_of=date(2026, 4, 1), utility_billing=NoUtilityBilling())
    return db.scalar(select(Invoice).where(Invoice.tenant_id == t.id, Invoice.period_start == date(2026, 4, 1)))


def test_refund_waits_while_its_credit_sits_on_a_later_invoice(db, org, billed):
    t, march = billed
    rec = record_payment(db, org_id=org.id, tenant_id=t.id, amount="6000", transaction_reference="QX20", as_of=AS_OF)
    april = _april(db, t)
    assert april.opening_balance == Decimal("-1000.00")
    assert tenant_credit(db, t.id) == Decimal("0.00")

    with pytest.raises(Conflict) as ei:
        update_payment_status(db, rec.payment.id, org_id=org.id, new_status="refunded", as_of=date(2026, 4, 2))
    db.rollback()

    assert ei.value.details["credit_drawn"] == Decimal("1000.00")
    db.refresh(rec.payment)
    db.refresh(march)
    assert rec.payment.status == "completed"
    assert march.status == "paid"
    assert _count(db, PaymentAllocation) == 1


def test_refund_after_voiding_the_invoice_that_drew_the_credit(db, org, billed):
    t, march = billed
    rec = record_payment(db, org_id=org.id, tenant_id=t.id, amount="6000", transaction_reference="QX21", as_of=AS_OF)
    april = _april(db, t)

    void_invoice(db, april.id, org_id=org.id, actor_user_id=None, as_of=date(2026, 4, 2))
    assert tenant_credit(db, t.id) == Decimal("1000.00")

    update_payment_status(db, rec.payment.id, org_id=org.id, new_status="refunded", as_of=date(2026, 4, 2))

    db.refresh(march)
    assert march.status == "overdue"
    assert march.balance == Decimal("5000.00")
    assert tenant_credit(db, t.id) == Decimal("0.00")
    assert outstanding_balance(db, t.id) == Decimal("5000.00")


def _record_with_allocation_down(db, org, t, monkeypatch, **kwargs):
    def down(*args, **kw):
        raise TransientError("database connection dropped")

    with monkeypatch.context() as m:
        m.setattr("rentbilling.services.payment_allocator._allocate_once", down)
        with pytest.raises(AllocationFailed):
            record_payment(db, org_id=org.id, tenant_id=t.id, amount="600", as_of=AS_OF, **kwargs)
    return db.scalar(select(Payment).where(Payment.tenant_id == t.id))


def test_failed_allocation_leaves_payment_unconfirmed_and_retryable(db, org, billed, monkeypatch):
    t, inv = billed
    payment = _record_with_allocation_down(db, org, t, monkeypatch)

    assert payment.status == "completed"
    assert payment.confirmed_at is None
    assert _count(db, PaymentAllocation) == 0

    rec = update_payment_status(db, payment.id, org_id=org.id, new_status="completed", as_of=AS_OF)

    assert rec.allocation.allocations == [(inv.id, Decimal("600.00"))]
    db.refresh(inv)
    assert inv.balance == Decimal("4400.00")
    assert outstanding_balance(db, t.id) - tenant_credit(db, t.id) == Decimal("4400.00")

    again = update_payment_status(db, payment.id, org_id=org.id, new_status="completed", as_of=AS_OF)
    assert again.allocation is None
    assert _count(db, PaymentAllocation) == 1


def test_sweep_allocates_payments_left_unconfirmed(db, org, billed, monkeypatch):
    t, inv = billed
    payment = _record_with_allocation_down(db, org, t, monkeypatch, transaction_reference="QX30")

    assert allocate_unconfirmed_payments(db, org_id=org.id, as_of=AS_OF) == {"allocated": 1, "failed": 0}
    db.refresh(payment)
    db.refresh(inv)
    assert payment.confirmed_at is not None
    assert inv.balance == Decimal("4400.00")

    assert allocate_unconfirmed_payments(db, org_id=org.id, as_of=AS_OF) == {"allocated": 0, "failed": 0}


@pytest.mark.parametrize("start,target", [("failed", "completed"), ("refunded", "completed"), ("completed", "pending")])
def test_illegal_status_transitions(db, org, billed, start, target):
    t, _ = billed
    rec = record_payment(db, org_id=org.id, tenant_id=t.id, amount="100", status="pending", as_of=AS_OF)
    if start == "completed":
        update_payment_status(db, rec.payment.id, org_id=org.id, new_status="completed", as_of=AS_OF)
    else:
        update_payment_status(db, rec.payment.id, org_id=org.id, new_status=start, as_of=AS_OF)

    with pytest.raises(InvalidArgument):
        update_payment_status(db, rec.payment.id, org_id=org.id, new_status=target, as_of=AS_OF)


def test_webhook_matches_unit_number_case_insensitively(db, org, billed):
    t, inv = billed

    rec = record_webhook_payment(
        db, org_id=org.id, account_reference="b12", amount="5000", transaction_reference="MPESA-77", as_of=AS_OF
    )

    assert rec.payment.tenant_id == t.id
    assert rec.payment.method == "mpesa"
    db.refresh(inv)
    assert inv.status == "paid"


def test_webhook_redelivery_is_idempotent(db, org, billed):
    t, _ = billed
    kw = dict(org_id=org.id, account_reference="B12", amount="5000", transaction_reference="MPESA-77", as_of=AS_OF)

    first = record_webhook_payment(db, **kw)
    second = record_webhook_payment(db, **kw)

    assert second.created is False
    assert second.payment.id == first.payment.id
    assert _count(db, PaymentAllocation) == 1


def test_webhook_for_unknown_account_is_not_found(db, org, billed):
    with pytest.raises(NotFound):
        record_webhook_payment(
            db, org_id=org.id, account_reference="Z99", amount="100", transaction_reference="MPESA-1", as_of=AS_OF
        )


def test_webhook_requires_a_reference(db, org, billed):
    with pytest.raises(InvalidArgument):
        record_webhook_payment(db, org_id=org.id, account_reference="B12", amount="100", transaction_reference="  ")
