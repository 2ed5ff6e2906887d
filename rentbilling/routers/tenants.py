# rentbilling/routers/tenants.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import Principal, get_principal
from ..db import get_db
from ..schemas import TenantBalanceOut
from ..services.invoice_service import tenant_balance

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.get("/{tenant_id}/balance", response_model=TenantBalanceOut)
def balance(tenant_id: int, db: Session = Depends(get_db), p: Principal = Depends(get_principal)):
    return tenant_balance(db, tenant_id, p)
