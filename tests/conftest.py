from __future__ import annotations

import os
from datetime import date, datetime
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_rentbilling.db")
os.environ.setdefault("APP_ENV", "test")

from rentbilling.db import Base, SessionLocal, engine  # noqa: E402
from rentbilling.models import AppUser, Organization, OrgMembership, Property, Tenant, Unit  # noqa: E402


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _fast_backoff(monkeypatch):
    from rentbilling.config import settings

    monkeypatch.setattr(settings, "billing_retry_base_seconds", 0.0)
    monkeypatch.setattr(settings, "billing_retry_max_seconds", 0.0)


@pytest.fixture
def db():
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def org(db):
    o = Organization(slug="acme", name="Acme Lettings", created_at=datetime.utcnow())
    landlord = AppUser(email="landlord@acme.local", display_name="landlord", created_at=datetime.utcnow())
    db.add_all([o, landlord])
    db.commit()
    db.add(OrgMembership(org_id=o.id, user_id=landlord.id, role="owner", created_at=datetime.utcnow()))
    db.commit()
    return o


@pytest.fixture
def prop(db, org):
    landlord = db.query(AppUser).filter(AppUser.email == "landlord@acme.local").one()
    p = Property(org_id=org.id, landlord_user_id=landlord.id, name="Riverside Court", created_at=datetime.utcnow())
    db.add(p)
    db.commit()
    return p


@pytest.fixture
def make_tenant(db, org, prop):
    counter = {"n": 0}

    def _make(
        *,
        rent="12000.00",
        due_day=1,
        lease_start=date(2025, 1, 1),
        lease_end=None,
        status="active",
        grace=5,
        fee_type=None,
        fee_pct=None,
        fee_amount=None,
        unit_number=None,
        property_id=None,
    ) -> Tenant:
        counter["n"] += 1
        u = Unit(
            org_id=org.id,
            property_id=property_id or prop.id,
            unit_number=unit_number or f"A{counter['n']}",
            created_at=datetime.utcnow(),
        )
        db.add(u)
        db.flush()
        t = Tenant(
            org_id=org.id,
            unit_id=u.id,
            full_name=f"Tenant {counter['n']}",
            monthly_rent=Decimal(rent),
            rent_due_day=due_day,
            lease_start=lease_start,
            lease_end=lease_end,
            status=status,
            late_fee_grace_period_days=grace,
            late_fee_type=fee_type,
            late_fee_percentage=Decimal(str(fee_pct)) if fee_pct is not None else None,
            late_fee_fixed_amount=Decimal(str(fee_amount)) if fee_amount is not None else None,
            created_at=datetime.utcnow(),
        )
        db.add(t)
        db.commit()
        return t

    return _make
