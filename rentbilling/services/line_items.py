# rentbilling/services/line_items.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from ..config import settings
from ..domain.charges import LINE_FEE, LINE_RENT, LineDraft, base_amount
from ..domain.invoice_status import InvoiceStatus, calculate_balance
from ..domain.late_fees import describe_late_fee, tenant_late_fee
from ..domain.money import ZERO, money, to_decimal
from ..models import Invoice, Tenant
from .retry import is_transient, retry_transient
from .utility_billing import UtilityBilling

log = logging.getLogger(__name__)


@dataclass
class Composition:
    lines: list[LineDraft]
    # unpaid balance taken off the prior invoice
    carried_forward: Decimal = ZERO
    # tenant credit folded into the opening balance
    credit_applied: Decimal = ZERO
    warnings: list[str] = field(default_factory=list)

    @property
    def amount(self) -> Decimal:
        return base_amount(self.lines)

    @property
    def opening_balance(self) -> Decimal:
        return money(self.carried_forward - self.credit_applied)


def _utility_lines(
    utility_billing: UtilityBilling,
    tenant: Tenant,
    period_start: date,
    period_end: date,
    warnings: list[str],
) -> list[LineDraft]:
    try:
        return list(
            retry_transient(
                lambda: utility_billing.get_charges_for_period(tenant.unit_id, period_start, period_end),
                what="utility_lookup",
            )
        )
    except Exception as e:
        if not is_transient(e):
            raise
        # invoice goes out without utilities rather than not at all
        log.warning(
            "utility lookup failed after retries, issuing without utility lines",
            extra={"tenant_id": tenant.id},
        )
        warnings.append(f"tenant {tenant.id}: utility charges unavailable ({type(e).__name__})")
        return []


def compose_line_items(
    tenant: Tenant,
    period_start: date,
    period_end: date,
    *,
    prior_invoice: Optional[Invoice],
    prior_settled: Decimal,
    utility_billing: UtilityBilling,
    as_of: date,
    available_credit: Decimal = ZERO,
) -> Composition:
    """
    Ordered charge lines for one tenant/period:

      1. opening_balance  prior unpaid balance net of tenant credit (negative = prepaid)
      2. rent             1 x monthly rent
      3. utility          whatever the utility collaborator reports
      4. fee              late fee on the prior invoice, if it is overdue

    The opening line is emitted first but computed last, since credit can
    only be drawn up to what the new invoice will actually ask for.
    """
    warnings: list[str] = []
    period_label = period_start.strftime("%B %Y")

    prior_unpaid = ZERO
    if prior_invoice is not None and prior_invoice.status != InvoiceStatus.VOID.value:
        prior_unpaid = calculate_balance(prior_invoice, prior_settled)

    charges: list[LineDraft] = [
        LineDraft.priced(LINE_RENT, f"Rent - {period_label}", 1, to_decimal(tenant.monthly_rent)),
    ]
    charges.extend(_utility_lines(utility_billing, tenant, period_start, period_end, warnings))

    if prior_invoice is not None and prior_unpaid > 0 and prior_invoice.due_date < as_of:
        # Intentionally capped: the fee base is the overdue amount up to one
        # month of rent, so a partly paid month is not fined on full rent and a
        # balance rolled forward across months is not compounded.
        fee_base = min(money(tenant.monthly_rent), prior_unpaid)
        fee = tenant_late_fee(tenant, fee_base, prior_invoice.due_date, as_of)
        if fee > 0:
            detail = describe_late_fee(
                tenant, fee_base, prior_invoice.due_date, as_of, currency=settings.currency_code
            )
            charges.append(LineDraft.priced(LINE_FEE, detail, 1, fee))

    credit = money(max(ZERO, to_decimal(available_credit)))
    credit_applied = min(credit, money(prior_unpaid + base_amount(charges)))

    lines: list[LineDraft] = []
    opening = money(prior_unpaid - credit_applied)
    if opening != 0:
        if opening > 0:
            desc = f"Balance brought forward from {prior_invoice.period_start.strftime('%B %Y')}"
        else:
            desc = "Prepaid credit"
        lines.append(LineDraft.carried(desc, opening))
    lines.extend(charges)

    return Composition(
        lines=lines,
        carried_forward=prior_unpaid,
        credit_applied=credit_applied,
        warnings=warnings,
    )
