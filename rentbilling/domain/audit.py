from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Optional, Union

from sqlalchemy.orm import Session

from ..models import AuditEvent, Invoice, Payment


def invoice_snapshot(inv: Any) -> dict[str, Any]:
    return {
        "id": getattr(inv, "id", None),
        "tenant_id": inv.tenant_id,
        "period_start": inv.period_start,
        "due_date": inv.due_date,
        "amount": inv.amount,
        "opening_balance": inv.opening_balance,
        "balance": inv.balance,
        "carried_forward": inv.carried_forward,
        "status": inv.status,
    }


def payment_snapshot(p: Any) -> dict[str, Any]:
    return {
        "id": getattr(p, "id", None),
        "tenant_id": p.tenant_id,
        "amount": p.amount,
        "unallocated_amount": p.unallocated_amount,
        "status": p.status,
        "transaction_reference": p.transaction_reference,
    }


_SNAPSHOTS: dict[type, Callable[[Any], dict[str, Any]]] = {
    Invoice: invoice_snapshot,
    Payment: payment_snapshot,
}


def snapshot(subject: Union[Invoice, Payment]) -> dict[str, Any]:
    return _SNAPSHOTS[type(subject)](subject)


def record_billing_event(
    db: Session,
    subject: Union[Invoice, Payment],
    action: str,
    *,
    actor_user_id: Optional[int] = None,
    before: Optional[dict[str, Any]] = None,
    **details: Any,
) -> AuditEvent:
    """
    Adds an audit row for an invoice or payment change to the current transaction.

    `after` is the subject's snapshot at call time, merged with `details`
    (allocations, returned credit, ...). The subject must already be flushed
    so it has an id.

    Never commits: the row lands or rolls back with the change it describes.
    """
    after = {**snapshot(subject), **details}
    row = AuditEvent(
        org_id=subject.org_id,
        actor_user_id=actor_user_id,
        action=action,
        entity_type=type(subject).__name__,
        entity_id=str(subject.id),
        before_json=None if before is None else json.dumps(before, sort_keys=True, default=str),
        after_json=json.dumps(after, sort_keys=True, default=str),
        created_at=datetime.utcnow(),
    )
    db.add(row)
    return row
