# rentbilling/auth.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .models import AppUser, Organization, OrgMembership


@dataclass(frozen=True)
class Principal:
    org_id: int
    org_slug: str
    user_id: int
    email: str
    role: str  # owner | operator | analyst | tenant
    tenant_id: Optional[int] = None

    @property
    def is_tenant(self) -> bool:
        return self.role == "tenant"


ROLE_ORDER = {"tenant": 0, "analyst": 1, "operator": 2, "owner": 3}


def _require_role(principal: Principal, min_role: str) -> None:
    if ROLE_ORDER.get(principal.role, -1) < ROLE_ORDER.get(min_role, 999):
        raise HTTPException(status_code=403, detail=f"Requires role >= {min_role}")


def _resolve_org(db: Session, org_slug: str) -> Optional[Organization]:
    return db.scalar(select(Organization).where(Organization.slug == org_slug))


def _get_user_by_email(db: Session, email: str) -> Optional[AppUser]:
    return db.scalar(select(AppUser).where(AppUser.email == email))


def _get_membership(db: Session, org_id: int, user_id: int) -> Optional[OrgMembership]:
    return db.scalar(select(OrgMembership).where(OrgMembership.org_id == org_id, OrgMembership.user_id == user_id))


def get_principal(
    request: Request,
    db: Session = Depends(get_db),
) -> Principal:
    """
    Dev header auth only (settings.auth_mode == "dev"); in deployment the
    platform gateway resolves identity and forwards the same headers.

      X-Org-Slug, X-User-Email, X-User-Role, X-Tenant-Id (role=tenant only)

    Header names come from the dev_header_* settings.
    """
    org_slug = (request.headers.get(settings.dev_header_org_slug) or "").strip()
    if not org_slug:
        raise HTTPException(status_code=401, detail=f"Missing {settings.dev_header_org_slug} (active org context).")

    if settings.auth_mode != "dev":
        raise HTTPException(status_code=401, detail="Not authenticated")

    email = (request.headers.get(settings.dev_header_user_email) or "").strip().lower()
    role_hint = (request.headers.get(settings.dev_header_user_role) or "owner").strip().lower()
    tenant_hint = (request.headers.get(settings.dev_header_tenant_id) or "").strip()
    if not email:
        raise HTTPException(status_code=401, detail=f"Missing {settings.dev_header_user_email} for dev auth")

    org = _resolve_org(db, org_slug)
    if org is None and settings.dev_auto_provision:
        org = Organization(slug=org_slug, name=org_slug, created_at=datetime.utcnow())
        db.add(org)
        db.commit()
        db.refresh(org)

    user = _get_user_by_email(db, email)
    if user is None and settings.dev_auto_provision:
        user = AppUser(email=email, display_name=email.split("@")[0], created_at=datetime.utcnow())
        db.add(user)
        db.commit()
        db.refresh(user)

    if org is None or user is None:
        raise HTTPException(status_code=401, detail="Dev auth could not provision user/org")

    mem = _get_membership(db, int(org.id), int(user.id))
    if mem is None and settings.dev_auto_provision:
        role = role_hint if role_hint in ROLE_ORDER else "owner"
        mem = OrgMembership(
            org_id=int(org.id),
            user_id=int(user.id),
            role=role,
            tenant_id=int(tenant_hint) if role == "tenant" and tenant_hint.isdigit() else None,
            created_at=datetime.utcnow(),
        )
        db.add(mem)
        db.commit()
        db.refresh(mem)

    if mem is None:
        raise HTTPException(status_code=403, detail="Not a member of this org")

    role = str(mem.role)
    if role == "tenant" and mem.tenant_id is None:
        raise HTTPException(status_code=403, detail="Tenant login is not linked to a lease")

    return Principal(
        org_id=int(org.id),
        org_slug=str(org.slug),
        user_id=int(user.id),
        email=str(user.email),
        role=role,
        tenant_id=int(mem.tenant_id) if mem.tenant_id is not None else None,
    )


def require_operator(p: Principal = Depends(get_principal)) -> Principal:
    _require_role(p, "operator")
    return p


def require_owner(p: Principal = Depends(get_principal)) -> Principal:
    _require_role(p, "owner")
    return p
