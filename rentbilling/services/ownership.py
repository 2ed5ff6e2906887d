# rentbilling/services/ownership.py
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import NotFound
from ..models import Invoice, Payment, Tenant


def must_get_tenant(db: Session, *, org_id: int, tenant_id: int) -> Tenant:
    row = db.scalar(select(Tenant).where(Tenant.id == tenant_id, Tenant.org_id == org_id))
    if not row:
        raise NotFound("tenant not found")
    return row


def must_get_invoice(db: Session, *, org_id: int, invoice_id: int) -> Invoice:
    row = db.scalar(select(Invoice).where(Invoice.id == invoice_id, Invoice.org_id == org_id))
    if not row:
        raise NotFound("invoice not found")
    return row


def must_get_payment(db: Session, *, org_id: int, payment_id: int) -> Payment:
    row = db.scalar(select(Payment).where(Payment.id == payment_id, Payment.org_id == org_id))
    if not row:
        raise NotFound("payment not found")
    return row
