from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..config import settings
from ..services.runtime_metrics import METRICS

log = logging.getLogger("rentbilling.request")

REQUEST_ID_HEADER = "X-Request-ID"

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
org_slug_ctx: ContextVar[Optional[str]] = ContextVar("org_slug", default=None)


def current_request_id() -> Optional[str]:
    return request_id_ctx.get()


def current_org_slug() -> Optional[str]:
    return org_slug_ctx.get()


def _route_template(request: Request) -> str:
    # /api/invoices/{invoice_id} rather than /api/invoices/42, so log lines group
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Per request:
      - reuse the caller's X-Request-ID or mint one, echo it on the response
      - expose request id + org slug to every log record via ContextVars
      - one access log line (method, route, status, latency) and a status-class counter
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        org_slug = (request.headers.get(settings.dev_header_org_slug) or "").strip() or None

        request.state.request_id = rid
        rid_token = request_id_ctx.set(rid)
        org_token = org_slug_ctx.set(org_slug)

        t0 = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = rid
            return response
        finally:
            latency_ms = int((time.perf_counter() - t0) * 1000)
            METRICS.inc(f"http.responses.{status_code // 100}xx")
            log.info(
                "%s %s -> %d",
                request.method,
                _route_template(request),
                status_code,
                extra={
                    "method": request.method,
                    "route": _route_template(request),
                    "status_code": status_code,
                    "latency_ms": latency_ms,
                },
            )
            org_slug_ctx.reset(org_token)
            request_id_ctx.reset(rid_token)
