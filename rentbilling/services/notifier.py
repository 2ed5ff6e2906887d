from __future__ import annotations

import logging
from decimal import Decimal
from typing import Protocol

log = logging.getLogger(__name__)


class Notifier(Protocol):
    """Fire-and-forget hooks toward SMS/email delivery (implemented by the platform)."""

    def payment_confirmed(self, tenant_id: int, invoice_id: int, amount_applied: Decimal) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event in the log stream only."""

    def payment_confirmed(self, tenant_id: int, invoice_id: int, amount_applied: Decimal) -> None:
        log.info(
            "payment applied to invoice",
            extra={"tenant_id": tenant_id, "invoice_id": invoice_id, "amount_applied": str(amount_applied)},
        )


def notify_payment_confirmed(notifier: Notifier, *, tenant_id: int, allocations: list[tuple[int, Decimal]]) -> int:
    """
    Send one notification per allocation. Returns how many were delivered.

    Runs after the allocation has committed; a failing notifier is logged and
    skipped, never propagated.
    """
    sent = 0
    for invoice_id, amount in allocations:
        try:
            notifier.payment_confirmed(int(tenant_id), int(invoice_id), amount)
            sent += 1
        except Exception:
            log.exception(
                "payment notification failed",
                extra={"tenant_id": tenant_id, "invoice_id": invoice_id},
            )
    return sent
