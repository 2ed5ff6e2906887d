# rentbilling/schemas.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Any

from pydantic import BaseModel, Field, ConfigDict


# -------------------- Invoices --------------------

class InvoiceLineItemOut(BaseModel):
    id: int
    position: int
    line_type: str
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal
    unit_of_measure: Optional[str] = None
    utility_config_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class InvoiceOut(BaseModel):
    id: int
    org_id: int
    tenant_id: int
    unit_id: int
    property_id: int
    landlord_user_id: Optional[int] = None

    period_start: date
    period_end: date
    due_date: date

    amount: Decimal
    opening_balance: Decimal
    balance: Decimal
    carried_forward: Decimal
    status: str
    notes: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    line_items: List[InvoiceLineItemOut] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class GenerateInvoicesIn(BaseModel):
    year: int = Field(ge=2000, le=2100)
    month: int = Field(ge=1, le=12)
    as_of: Optional[date] = None


class TenantFailureOut(BaseModel):
    tenant_id: int
    error: str
    code: str


class GenerateInvoicesOut(BaseModel):
    year: int
    month: int
    created: int
    skipped: int
    failed: int
    failures: List[TenantFailureOut] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    cancelled: bool = False
    invoice_ids: List[int] = Field(default_factory=list)


class RecalculateOut(BaseModel):
    changed: bool
    invoice: InvoiceOut


class VoidInvoiceIn(BaseModel):
    reason: Optional[str] = None


# -------------------- Payments --------------------

class PaymentCreate(BaseModel):
    tenant_id: int
    amount: Decimal
    payment_date: Optional[date] = None
    method: str = "cash"
    transaction_reference: Optional[str] = None
    status: str = "completed"
    notes: Optional[str] = None


class PaymentStatusUpdate(BaseModel):
    status: str


class PaymentWebhookIn(BaseModel):
    account_reference: str
    amount: Decimal
    transaction_reference: str
    payment_date: Optional[date] = None
    method: str = "mpesa"


class PaymentOut(BaseModel):
    id: int
    org_id: int
    tenant_id: int
    unit_id: int
    amount: Decimal
    unallocated_amount: Decimal
    payment_date: date
    method: str
    transaction_reference: Optional[str] = None
    status: str
    notes: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AllocationOut(BaseModel):
    invoice_id: int
    amount: Decimal


class AllocationResultOut(BaseModel):
    payment_id: int
    allocations: List[AllocationOut] = Field(default_factory=list)
    applied: Decimal
    unallocated: Decimal
    already_allocated: bool = False


class RecordedPaymentOut(BaseModel):
    payment: PaymentOut
    created: bool
    allocation: Optional[AllocationResultOut] = None


# -------------------- Tenants --------------------

class TenantBalanceOut(BaseModel):
    tenant_id: int
    outstanding: Decimal
    credit: Decimal
    net: Decimal
    currency: str
    late_fee_policy: str


# -------------------- Ops --------------------

class HealthOut(BaseModel):
    ok: bool
    version: str
    db: str
    details: dict[str, Any] = Field(default_factory=dict)
