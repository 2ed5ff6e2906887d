# rentbilling/routers/payments.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Principal, require_operator
from ..db import get_db
from ..schemas import PaymentCreate, PaymentStatusUpdate, PaymentWebhookIn, RecordedPaymentOut
from ..services.payment_service import RecordedPayment, record_payment, record_webhook_payment, update_payment_status

router = APIRouter(prefix="/payments", tags=["payments"])


def _out(r: RecordedPayment) -> dict:
    return {
        "payment": r.payment,
        "created": r.created,
        "allocation": r.allocation.to_dict() if r.allocation is not None else None,
    }


@router.post("", response_model=RecordedPaymentOut)
def create_payment(payload: PaymentCreate, db: Session = Depends(get_db), p: Principal = Depends(require_operator)):
    r = record_payment(
        db,
        org_id=p.org_id,
        actor_user_id=p.user_id,
        **payload.model_dump(),
    )
    return _out(r)


@router.patch("/{payment_id}/status", response_model=RecordedPaymentOut)
def set_status(
    payment_id: int,
    payload: PaymentStatusUpdate,
    db: Session = Depends(get_db),
    p: Principal = Depends(require_operator),
):
    r = update_payment_status(db, payment_id, org_id=p.org_id, new_status=payload.status, actor_user_id=p.user_id)
    return _out(r)


@router.post("/webhook", response_model=RecordedPaymentOut)
def gateway_webhook(payload: PaymentWebhookIn, db: Session = Depends(get_db), p: Principal = Depends(require_operator)):
    # the gateway relay authenticates as a service operator of the org
    r = record_webhook_payment(db, org_id=p.org_id, **payload.model_dump())
    return _out(r)
