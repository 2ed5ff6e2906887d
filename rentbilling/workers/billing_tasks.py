from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from ..db import session_scope
from ..services.invoice_generator import generate_monthly_invoices
from ..services.invoice_service import sweep_overdue_invoices
from ..services.payment_allocator import allocate_unconfirmed_payments
from .celery_app import celery_app

log = logging.getLogger(__name__)


@celery_app.task(name="rentbilling.workers.billing_tasks.generate_monthly")
def generate_monthly(year: int, month: int, org_id: Optional[int] = None) -> dict:
    with session_scope() as db:
        summary = generate_monthly_invoices(db, int(year), int(month), org_id=org_id)
    if summary.failures:
        # per-tenant failures do not fail the task; the next daily run retries them
        log.warning(
            "monthly generation finished with %d failed tenants",
            len(summary.failures),
            extra={"year": year, "month": month, "org_id": org_id},
        )
    return summary.to_dict()


@celery_app.task(name="rentbilling.workers.billing_tasks.generate_current_month")
def generate_current_month() -> dict:
    today = date.today()
    return generate_monthly(today.year, today.month)


@celery_app.task(name="rentbilling.workers.billing_tasks.sweep_overdue")
def sweep_overdue(org_id: Optional[int] = None) -> dict:
    with session_scope() as db:
        # allocations land before invoices are re-evaluated
        retried = allocate_unconfirmed_payments(db, org_id=org_id)
        changed = sweep_overdue_invoices(db, org_id=org_id)
    return {"ok": True, "changed": changed, "reallocated": retried["allocated"], "failed": retried["failed"]}
