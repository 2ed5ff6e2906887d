# rentbilling/services/utility_billing.py
from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import select, func, or_
from sqlalchemy.orm import Session

from ..domain.charges import LINE_UTILITY, LineDraft
from ..domain.money import money, to_decimal
from ..models import MeterReading, Tenant, Unit, UtilityConfig

log = logging.getLogger(__name__)

MODE_FIXED = "fixed"
MODE_SHARED = "shared"
MODE_METERED = "metered"


class UtilityBilling(Protocol):
    """
    Utility charges for one unit and billing period.

    Must be idempotent for a given period: the generator may call it again
    after a transient failure.
    """

    def get_charges_for_period(self, unit_id: int, period_start: date, period_end: date) -> list[LineDraft]: ...


class NoUtilityBilling:
    def get_charges_for_period(self, unit_id: int, period_start: date, period_end: date) -> list[LineDraft]:
        return []


class DbUtilityBilling:
    """
    Utility charges from UtilityConfig rows:
      fixed   -> flat recurring amount
      shared  -> property-wide amount split across active tenants
      metered -> (latest reading in period - previous reading) * rate

    Configs with missing/zero amounts or rates are skipped.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _configs(self, unit: Unit, period_start: date, period_end: date) -> list[UtilityConfig]:
        q = select(UtilityConfig).where(
            UtilityConfig.is_active.is_(True),
            UtilityConfig.property_id == unit.property_id,
            or_(UtilityConfig.unit_id.is_(None), UtilityConfig.unit_id == unit.id),
            UtilityConfig.effective_from <= period_end,
            or_(UtilityConfig.effective_to.is_(None), UtilityConfig.effective_to >= period_start),
        )
        return list(self.db.scalars(q.order_by(UtilityConfig.id.asc())).all())

    def _active_tenant_count(self, property_id: int) -> int:
        n = self.db.scalar(
            select(func.count(Tenant.id))
            .join(Unit, Unit.id == Tenant.unit_id)
            .where(Unit.property_id == property_id, Tenant.status == "active")
        )
        return int(n or 0)

    def _metered_consumption(self, cfg: UtilityConfig, unit_id: int, period_start: date, period_end: date) -> Optional[Decimal]:
        current = self.db.scalar(
            select(MeterReading)
            .where(
                MeterReading.utility_config_id == cfg.id,
                MeterReading.unit_id == unit_id,
                MeterReading.reading_date <= period_end,
            )
            .order_by(MeterReading.reading_date.desc(), MeterReading.id.desc())
            .limit(1)
        )
        if current is None or current.reading_date < period_start:
            return None

        previous = self.db.scalar(
            select(MeterReading)
            .where(
                MeterReading.utility_config_id == cfg.id,
                MeterReading.unit_id == unit_id,
                MeterReading.reading_date < current.reading_date,
            )
            .order_by(MeterReading.reading_date.desc(), MeterReading.id.desc())
            .limit(1)
        )
        if previous is None:
            return None

        consumption = to_decimal(current.reading_value) - to_decimal(previous.reading_value)
        return consumption if consumption > 0 else None

    def get_charges_for_period(self, unit_id: int, period_start: date, period_end: date) -> list[LineDraft]:
        unit = self.db.get(Unit, int(unit_id))
        if unit is None:
            return []

        configs = self._configs(unit, period_start, period_end)
        if not configs:
            return []

        shared_count = None
        lines: list[LineDraft] = []

        for cfg in configs:
            mode = (cfg.billing_mode or "").strip().lower()

            if mode == MODE_FIXED:
                amt = to_decimal(cfg.fixed_amount)
                if amt <= 0:
                    continue
                lines.append(
                    LineDraft.priced(
                        LINE_UTILITY,
                        f"{cfg.utility_name} (Fixed)",
                        1,
                        amt,
                        unit_of_measure=cfg.unit_of_measure,
                        utility_config_id=cfg.id,
                    )
                )

            elif mode == MODE_SHARED:
                amt = to_decimal(cfg.shared_amount)
                if amt <= 0:
                    continue
                if shared_count is None:
                    shared_count = self._active_tenant_count(unit.property_id)
                if shared_count <= 0:
                    continue
                lines.append(
                    LineDraft.priced(
                        LINE_UTILITY,
                        f"{cfg.utility_name} (Shared)",
                        1,
                        money(amt / shared_count),
                        unit_of_measure=cfg.unit_of_measure,
                        utility_config_id=cfg.id,
                    )
                )

            elif mode == MODE_METERED:
                rate = to_decimal(cfg.rate)
                if rate <= 0:
                    continue
                consumption = self._metered_consumption(cfg, unit.id, period_start, period_end)
                if consumption is None:
                    continue
                lines.append(
                    LineDraft.priced(
                        LINE_UTILITY,
                        f"{cfg.utility_name} (Metered)",
                        consumption,
                        rate,
                        unit_of_measure=cfg.unit_of_measure,
                        utility_config_id=cfg.id,
                    )
                )

            else:
                log.warning("unknown utility billing mode %r on config %s", cfg.billing_mode, cfg.id)

        if not lines:
            log.info("no utility line items for unit %s in %s", unit_id, period_start.isoformat())
        return lines
