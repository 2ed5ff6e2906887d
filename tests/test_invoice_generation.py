from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date
from decimal import Decimal

from sqlalchemy import select, update

from rentbilling.domain.charges import LINE_UTILITY, LineDraft
from rentbilling.db import SessionLocal
from rentbilling.models import AuditEvent, Invoice, Payment
from rentbilling.services import invoice_generator
from rentbilling.services.balances import tenant_credit
from rentbilling.services.invoice_generator import generate_monthly_invoices
from rentbilling.services.payment_service import record_payment
from rentbilling.services.runtime_metrics import METRICS
from rentbilling.services.utility_billing import NoUtilityBilling


def _invoices(db, tenant_id=None):
    q = select(Invoice).order_by(Invoice.period_start.asc(), Invoice.id.asc())
    if tenant_id is not None:
        q = q.where(Invoice.tenant_id == tenant_id)
    return list(db.scalars(q).all())


def test_generation_is_idempotent(db, org, make_tenant):
    make_tenant()
    make_tenant()

    first = generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())
    second = generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())

    assert first.created == 2
    assert second.created == 0
    assert second.skipped == 2
    assert len(_invoices(db)) == 2


def test_only_active_tenants_with_a_live_lease_are_billed(db, org, make_tenant):
    billed = make_tenant()
    make_tenant(status="inactive")
    make_tenant(lease_end=date(2026, 2, 15))
    make_tenant(lease_start=date(2026, 4, 1))
    ends_mid_month = make_tenant(lease_end=date(2026, 3, 15))

    summary = generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())

    assert summary.created == 2
    assert sorted(i.tenant_id for i in _invoices(db)) == sorted([billed.id, ends_mid_month.id])


def test_due_day_clamps_in_february(db, org, make_tenant):
    t = make_tenant(due_day=31)

    generate_monthly_invoices(db, 2026, 2, as_of=date(2026, 2, 1), utility_billing=NoUtilityBilling())

    [inv] = _invoices(db, t.id)
    assert inv.due_date == date(2026, 2, 28)
    assert inv.period_start == date(2026, 2, 1)
    assert inv.period_end == date(2026, 2, 28)
    assert inv.status == "issued"
    assert inv.balance == Decimal("12000.00")


def test_new_invoice_writes_audit_row(db, org, make_tenant):
    make_tenant()
    summary = generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())

    rows = list(db.scalars(select(AuditEvent).where(AuditEvent.action == "invoice.generate")).all())
    assert [r.entity_id for r in rows] == [str(summary.invoice_ids[0])]


def test_lost_insert_race_counts_as_skipped(db, org, make_tenant, monkeypatch):
    make_tenant()
    generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())

    # the other run's row is invisible to the existence check; the unique key catches it
    monkeypatch.setattr("rentbilling.services.invoice_generator._invoice_exists", lambda *a, **kw: False)
    summary = generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())

    assert summary.created == 0
    assert summary.skipped == 1
    assert summary.failures == []
    assert len(_invoices(db)) == 1


def test_cancellation_stops_between_tenants(db, org, make_tenant):
    make_tenant()
    make_tenant()
    make_tenant()
    cancel = threading.Event()

    class CancelOnFirstLookup:
        def get_charges_for_period(self, unit_id, period_start, period_end):
            cancel.set()
            return []

    summary = generate_monthly_invoices(
        db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=CancelOnFirstLookup(), cancel_event=cancel
    )

    assert summary.cancelled is True
    assert summary.created == 1
    assert len(_invoices(db)) == 1


def test_one_bad_tenant_does_not_stop_the_run(db, org, make_tenant):
    good = make_tenant()
    bad = make_tenant(due_day=0)
    failed_before = METRICS.get("invoices.failed")

    summary = generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())

    assert summary.created == 1
    assert [f.tenant_id for f in summary.failures] == [bad.id]
    assert summary.failures[0].code == "invalid_argument"
    assert summary.to_dict()["failed"] == 1
    assert [i.tenant_id for i in _invoices(db)] == [good.id]
    assert METRICS.get("invoices.failed") == failed_before + 1


def test_utility_outage_is_reported_as_warning(db, org, make_tenant):
    from rentbilling.errors import TransientError

    make_tenant()

    class Down:
        def get_charges_for_period(self, unit_id, period_start, period_end):
            raise TransientError("meter service unreachable")

    summary = generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=Down())

    assert summary.created == 1
    assert len(summary.warnings) == 1
    [inv] = _invoices(db)
    assert [l.line_type for l in inv.line_items] == ["rent"]


def test_unpaid_balance_carries_forward_with_late_fee(db, org, make_tenant):
    t = make_tenant(due_day=31, fee_type="percentage", fee_pct="10")

    generate_monthly_invoices(db, 2026, 2, as_of=date(2026, 2, 1), utility_billing=NoUtilityBilling())
    summary = generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 10), utility_billing=NoUtilityBilling())
    assert summary.created == 1

    feb, march = _invoices(db, t.id)
    db.refresh(feb)

    assert feb.carried_forward == Decimal("12000.00")
    assert feb.balance == Decimal("0.00")
    assert feb.status == "paid"

    assert march.opening_balance == Decimal("12000.00")
    assert march.amount == Decimal("13200.00")
    assert march.balance == Decimal("25200.00")
    assert [l.line_type for l in march.line_items] == ["opening_balance", "rent", "fee"]
    assert march.line_items[0].description == "Balance brought forward from February 2026"
    assert march.line_items[2].amount == Decimal("1200.00")


def test_utility_lines_land_on_invoice(db, org, make_tenant):
    make_tenant()

    class Water:
        def get_charges_for_period(self, unit_id, period_start, period_end):
            return [LineDraft.priced(LINE_UTILITY, "Water (Metered)", Decimal("12.5"), Decimal("85.50"))]

    generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=Water())

    [inv] = _invoices(db)
    assert inv.amount == Decimal("13068.75")
    assert [l.position for l in inv.line_items] == [0, 1]


def test_tenant_credit_folds_into_next_invoice(db, org, make_tenant):
    t = make_tenant()
    record_payment(
        db,
        org_id=org.id,
        tenant_id=t.id,
        amount="2000",
        payment_date=date(2026, 2, 20),
        transaction_reference="PREPAY-1",
        as_of=date(2026, 2, 20),
    )

    generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())

    [inv] = _invoices(db, t.id)
    assert inv.opening_balance == Decimal("-2000.00")
    assert inv.amount == Decimal("12000.00")
    assert inv.balance == Decimal("10000.00")
    assert inv.line_items[0].description == "Prepaid credit"

    assert tenant_credit(db, t.id) == Decimal("0.00")


def _prepay(db, org, t, amount="2000", ref="PREPAY-1"):
    return record_payment(
        db,
        org_id=org.id,
        tenant_id=t.id,
        amount=amount,
        payment_date=date(2026, 2, 20),
        transaction_reference=ref,
        as_of=date(2026, 2, 20),
    ).payment


def test_credit_is_drawn_under_the_tenant_lock(db, org, make_tenant, monkeypatch):
    t = make_tenant()
    _prepay(db, org, t)
    events = []
    real_lock = invoice_generator.tenant_allocation_lock
    real_consume = invoice_generator.consume_credit

    @contextmanager
    def recording_lock(session, tenant_id):
        events.append(("lock", tenant_id))
        with real_lock(session, tenant_id):
            yield
        events.append(("unlock", tenant_id))

    def recording_consume(session, tenant_id, amount):
        events.append(("consume", tenant_id))
        return real_consume(session, tenant_id, amount)

    monkeypatch.setattr(invoice_generator, "tenant_allocation_lock", recording_lock)
    monkeypatch.setattr(invoice_generator, "consume_credit", recording_consume)

    generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())

    assert events == [("lock", t.id), ("consume", t.id), ("unlock", t.id)]


def test_credit_spent_elsewhere_is_not_drawn_twice(db, org, make_tenant):
    t = make_tenant()
    payment = _prepay(db, org, t)
    assert payment.unallocated_amount == Decimal("2000.00")

    # another worker spends 1700 of the credit; this session still holds the old row
    other = SessionLocal()
    try:
        other.execute(update(Payment).where(Payment.id == payment.id).values(unallocated_amount=Decimal("300.00")))
        other.commit()
    finally:
        other.close()

    generate_monthly_invoices(db, 2026, 3, as_of=date(2026, 3, 1), utility_billing=NoUtilityBilling())

    [inv] = _invoices(db, t.id)
    assert inv.opening_balance == Decimal("-300.00")
    assert tenant_credit(db, t.id) == Decimal("0.00")
    db.refresh(payment)
    assert payment.unallocated_amount == Decimal("0.00")
