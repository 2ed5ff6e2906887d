# rentbilling/services/invoice_generator.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain.audit import invoice_snapshot, record_billing_event
from ..domain.due_dates import calculate_due_date, month_bounds
from ..domain.invoice_status import InvoiceStatus, apply
from ..domain.money import ZERO
from ..errors import TransientError
from ..models import Invoice, InvoiceLineItem, Tenant, Unit
from .balances import consume_credit, settled_total, tenant_credit
from .line_items import compose_line_items
from .retry import retry_transient
from .runtime_metrics import METRICS
from .tenant_locks import tenant_allocation_lock
from .utility_billing import DbUtilityBilling, UtilityBilling

log = logging.getLogger(__name__)


@dataclass
class TenantFailure:
    tenant_id: int
    error: str
    code: str = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"tenant_id": self.tenant_id, "error": self.error, "code": self.code}


@dataclass
class GenerationSummary:
    year: int
    month: int
    created: int = 0
    skipped: int = 0
    failures: list[TenantFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cancelled: bool = False
    invoice_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "year": self.year,
            "month": self.month,
            "created": self.created,
            "skipped": self.skipped,
            "failed": len(self.failures),
            "failures": [f.to_dict() for f in self.failures],
            "warnings": list(self.warnings),
            "cancelled": self.cancelled,
            "invoice_ids": list(self.invoice_ids),
        }


def _eligible_tenant_ids(db: Session, period_start: date, period_end: date, org_id: Optional[int]) -> list[int]:
    q = select(Tenant.id).where(
        Tenant.status == "active",
        Tenant.lease_start <= period_end,
        or_(Tenant.lease_end.is_(None), Tenant.lease_end >= period_start),
    )
    if org_id is not None:
        q = q.where(Tenant.org_id == int(org_id))
    return [int(x) for x in db.scalars(q.order_by(Tenant.id.asc())).all()]


def _invoice_exists(db: Session, tenant_id: int, period_start: date) -> bool:
    n = db.scalar(
        select(Invoice.id).where(Invoice.tenant_id == int(tenant_id), Invoice.period_start == period_start).limit(1)
    )
    return n is not None


def prior_invoice(db: Session, tenant_id: int, period_start: date) -> Optional[Invoice]:
    """Most recent non-void invoice for an earlier period."""
    return db.scalar(
        select(Invoice)
        .where(
            Invoice.tenant_id == int(tenant_id),
            Invoice.period_start < period_start,
            Invoice.status != InvoiceStatus.VOID.value,
        )
        .order_by(Invoice.period_start.desc(), Invoice.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )


def _create_invoice(
    db: Session,
    tenant: Tenant,
    year: int,
    month: int,
    *,
    as_of: date,
    utility_billing: UtilityBilling,
    warnings: list[str],
) -> Optional[Invoice]:
    period_start, period_end = month_bounds(year, month)
    due = calculate_due_date(year, month, tenant.rent_due_day)

    if _invoice_exists(db, tenant.id, period_start):
        return None

    prior = prior_invoice(db, tenant.id, period_start)
    prior_settled = settled_total(db, prior) if prior is not None else ZERO

    comp = compose_line_items(
        tenant,
        period_start,
        period_end,
        prior_invoice=prior,
        prior_settled=prior_settled,
        utility_billing=utility_billing,
        as_of=as_of,
        available_credit=tenant_credit(db, tenant.id),
    )
    warnings.extend(comp.warnings)

    unit = db.get(Unit, tenant.unit_id)
    now = datetime.utcnow()

    inv = Invoice(
        org_id=tenant.org_id,
        tenant_id=tenant.id,
        unit_id=tenant.unit_id,
        property_id=unit.property_id,
        landlord_user_id=unit.property.landlord_user_id if unit.property is not None else None,
        period_start=period_start,
        period_end=period_end,
        due_date=due,
        amount=comp.amount,
        opening_balance=comp.opening_balance,
        balance=comp.amount + comp.opening_balance,
        carried_forward=0,
        status=settings.invoice_initial_status,
        created_at=now,
        updated_at=now,
    )
    for pos, line in enumerate(comp.lines):
        inv.line_items.append(
            InvoiceLineItem(
                position=pos,
                line_type=line.line_type,
                description=line.description[:255],
                quantity=line.quantity,
                rate=line.rate,
                amount=line.amount,
                unit_of_measure=line.unit_of_measure,
                utility_config_id=line.utility_config_id,
            )
        )
    apply(inv, 0, as_of)
    db.add(inv)

    if prior is not None and comp.carried_forward > 0:
        before = invoice_snapshot(prior)
        prior.carried_forward = prior.carried_forward + comp.carried_forward
        apply(prior, prior_settled + comp.carried_forward, as_of)
        prior.updated_at = now
        db.add(prior)
        record_billing_event(db, prior, "invoice.carry_forward", before=before)

    if comp.credit_applied > 0:
        drawn = consume_credit(db, tenant.id, comp.credit_applied)
        if drawn != comp.credit_applied:
            # credit moved underneath us; let the retry re-read it
            raise TransientError("tenant credit changed during generation")

    # flush so a concurrent run's row surfaces here as IntegrityError
    db.flush()

    record_billing_event(db, inv, "invoice.generate", credit_applied=comp.credit_applied)
    return inv


def generate_monthly_invoices(
    db: Session,
    year: int,
    month: int,
    *,
    org_id: Optional[int] = None,
    as_of: Optional[date] = None,
    utility_billing: Optional[UtilityBilling] = None,
    cancel_event: Optional[threading.Event] = None,
) -> GenerationSummary:
    """
    One invoice per active tenant per month, safe to run repeatedly and
    concurrently.

    Each tenant is committed on its own. An existing invoice for the period
    is skipped; losing an insert race to another run (unique violation on
    tenant+period_start) is rolled back and also counted as skipped. Any other
    per-tenant error is rolled back and collected into the summary.

    cancel_event is checked between tenants only.
    """
    period_start, period_end = month_bounds(year, month)
    as_of = as_of or date.today()
    utility_billing = utility_billing or DbUtilityBilling(db)

    t0 = time.perf_counter()
    summary = GenerationSummary(year=int(year), month=int(month))
    tenant_ids = _eligible_tenant_ids(db, period_start, period_end, org_id)

    log.info(
        "invoice generation started for %d tenants",
        len(tenant_ids),
        extra={"org_id": org_id, "year": year, "month": month},
    )

    for tenant_id in tenant_ids:
        if cancel_event is not None and cancel_event.is_set():
            summary.cancelled = True
            log.warning("invoice generation cancelled", extra={"year": year, "month": month})
            break

        warnings: list[str] = []

        def _one() -> Optional[Invoice]:
            warnings.clear()
            tenant = db.get(Tenant, tenant_id)
            # credit and the prior invoice are read and written under the same
            # lock allocations, refunds and voids take; held through the commit
            with tenant_allocation_lock(db, tenant_id):
                inv = _create_invoice(
                    db,
                    tenant,
                    year,
                    month,
                    as_of=as_of,
                    utility_billing=utility_billing,
                    warnings=warnings,
                )
                if inv is not None:
                    db.commit()
            return inv

        try:
            inv = retry_transient(_one, what="invoice_persist", on_retry=lambda e: db.rollback())
        except IntegrityError:
            db.rollback()
            summary.skipped += 1
            METRICS.inc("invoices.skipped")
            log.info("invoice already created by a concurrent run", extra={"tenant_id": tenant_id})
            continue
        except Exception as e:
            db.rollback()
            summary.failures.append(
                TenantFailure(tenant_id=tenant_id, error=f"{type(e).__name__}: {e}", code=getattr(e, "code", "error"))
            )
            METRICS.inc("invoices.failed")
            log.exception("invoice generation failed for tenant", extra={"tenant_id": tenant_id})
            continue

        summary.warnings.extend(warnings)
        if inv is None:
            summary.skipped += 1
            METRICS.inc("invoices.skipped")
        else:
            summary.created += 1
            summary.invoice_ids.append(int(inv.id))
            METRICS.inc("invoices.created")

    METRICS.observe("invoices.generation", time.perf_counter() - t0)
    log.info(
        "invoice generation finished: created=%d skipped=%d failed=%d",
        summary.created,
        summary.skipped,
        len(summary.failures),
        extra={"org_id": org_id, "year": year, "month": month},
    )
    return summary
