from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from .config import settings
from .middleware.request_context import current_org_slug, current_request_id

# extra={...} keys promoted to top-level JSON fields
BILLING_KEYS = ("org_id", "tenant_id", "invoice_id", "payment_id", "year", "month", "attempt", "amount_applied")
HTTP_KEYS = ("method", "route", "status_code", "latency_ms")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with request context and billing identifiers."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        rid = current_request_id()
        if rid:
            payload["request_id"] = rid
        org_slug = current_org_slug()
        if org_slug:
            payload["org_slug"] = org_slug

        for k in BILLING_KEYS + HTTP_KEYS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines for the CLI; billing ids appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ids = [f"{k}={getattr(record, k)}" for k in BILLING_KEYS if hasattr(record, k)]
        return f"{line} [{' '.join(ids)}]" if ids else line


def configure_logging(fmt: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """
    Route everything through a single handler (stdout unless `stream` is given).

    fmt: "json" (services, workers) or "text" (CLI); defaults to settings.log_format.
    """
    level = (settings.log_level or "INFO").upper()
    fmt = (fmt or settings.log_format or "json").strip().lower()

    root = logging.getLogger()
    root.setLevel(level)

    # uvicorn --reload and celery both install their own handlers first
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(TextFormatter() if fmt == "text" else JsonFormatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel((settings.sql_log_level or "WARNING").upper())
