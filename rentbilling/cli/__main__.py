# rentbilling/cli/__main__.py
from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from typing import Optional

from rentbilling.db import session_scope
from rentbilling.logging_config import configure_logging
from rentbilling.services.invoice_generator import generate_monthly_invoices
from rentbilling.services.invoice_service import sweep_overdue_invoices
from rentbilling.services.payment_allocator import allocate_unconfirmed_payments


def _as_of(s: Optional[str]) -> Optional[date]:
    return date.fromisoformat(s) if s else None


def main(argv: Optional[list[str]] = None) -> int:
    today = date.today()

    p = argparse.ArgumentParser(prog="python -m rentbilling.cli")
    sub = p.add_subparsers(dest="command", required=True)

    g = sub.add_parser("generate", help="generate monthly invoices (idempotent)")
    g.add_argument("--year", type=int, default=today.year)
    g.add_argument("--month", type=int, default=today.month)
    g.add_argument("--org-id", type=int, default=None)
    g.add_argument("--as-of", default=None, help="run date for late fees, YYYY-MM-DD")

    s = sub.add_parser("sweep", help="retry failed allocations, then flip past-due invoices to overdue")
    s.add_argument("--org-id", type=int, default=None)
    s.add_argument("--as-of", default=None)

    args = p.parse_args(argv)
    # stdout carries the JSON summary
    configure_logging("text", stream=sys.stderr)

    with session_scope() as db:
        if args.command == "generate":
            out = generate_monthly_invoices(
                db, args.year, args.month, org_id=args.org_id, as_of=_as_of(args.as_of)
            ).to_dict()
        else:
            as_of = _as_of(args.as_of)
            retried = allocate_unconfirmed_payments(db, org_id=args.org_id, as_of=as_of)
            out = {
                "ok": True,
                "changed": sweep_overdue_invoices(db, org_id=args.org_id, as_of=as_of),
                "reallocated": retried["allocated"],
                "failed": retried["failed"],
            }

    print(json.dumps(out, default=str))
    return 1 if out.get("failed") else 0


if __name__ == "__main__":
    raise SystemExit(main())
