# rentbilling/routers/invoices.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal, require_operator, require_owner
from ..db import get_db
from ..schemas import GenerateInvoicesIn, GenerateInvoicesOut, InvoiceOut, RecalculateOut, VoidInvoiceIn
from ..services.invoice_generator import generate_monthly_invoices
from ..services.invoice_service import get_invoice, list_invoices, recalculate_invoice, void_invoice

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("/generate", response_model=GenerateInvoicesOut)
def generate(payload: GenerateInvoicesIn, db: Session = Depends(get_db), p: Principal = Depends(require_operator)):
    # manual trigger; safe to overlap with the scheduled run
    summary = generate_monthly_invoices(db, payload.year, payload.month, org_id=p.org_id, as_of=payload.as_of)
    return summary.to_dict()


@router.get("", response_model=list[InvoiceOut])
def list_(
    tenant_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    p: Principal = Depends(get_principal),
):
    return list_invoices(db, p, tenant_id=tenant_id, status=status, limit=limit)


@router.get("/{invoice_id}", response_model=InvoiceOut)
def get_one(invoice_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return get_invoice(db, invoice_id, p)


@router.post("/{invoice_id}/recalculate", response_model=RecalculateOut)
def recalculate(invoice_id: int, db: Session = Depends(get_db), p: Principal = Depends(require_operator)):
    inv, changed = recalculate_invoice(db, invoice_id, org_id=p.org_id)
    return {"changed": changed, "invoice": inv}


@router.post("/{invoice_id}/void", response_model=InvoiceOut)
def void(
    invoice_id: int,
    payload: VoidInvoiceIn | None = None,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_owner),
):
    return void_invoice(
        db,
        invoice_id,
        org_id=p.org_id,
        actor_user_id=p.user_id,
        reason=payload.reason if payload else None,
    )
