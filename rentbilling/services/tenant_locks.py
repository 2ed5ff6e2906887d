# rentbilling/services/tenant_locks.py
from __future__ import annotations

import threading
import zlib
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.orm import Session

_registry_lock = threading.Lock()
_local_locks: dict[int, threading.Lock] = {}


def _lock_key_tenant(tenant_id: int) -> int:
    # advisory locks are BIGINT; keep it deterministic
    s = f"tenant-allocation:{int(tenant_id)}".encode("utf-8")
    return int(zlib.crc32(s))


def _local_lock(tenant_id: int) -> threading.Lock:
    with _registry_lock:
        lk = _local_locks.get(int(tenant_id))
        if lk is None:
            lk = threading.Lock()
            _local_locks[int(tenant_id)] = lk
        return lk


def _is_postgres(db: Session) -> bool:
    bind = db.get_bind()
    return bind.dialect.name == "postgresql"


@contextmanager
def tenant_allocation_lock(db: Session, tenant_id: int) -> Iterator[None]:
    """
    Serialize allocation work for one tenant's invoice set.

    Postgres: transaction-scoped advisory lock, released by the commit or
    rollback that ends the allocation, so it also holds across app servers.
    Other backends: a process-local lock per tenant.
    """
    if _is_postgres(db):
        db.execute(text("select pg_advisory_xact_lock(:k)"), {"k": _lock_key_tenant(tenant_id)})
        yield
        return

    lk = _local_lock(tenant_id)
    with lk:
        yield
