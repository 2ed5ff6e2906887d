# rentbilling/main.py
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .errors import register_error_handlers
from .logging_config import configure_logging

from .middleware.request_context import RequestContextMiddleware

from .routers.ops import router as ops_router
from .routers.invoices import router as invoices_router
from .routers.payments import router as payments_router
from .routers.tenants import router as tenants_router

API_PREFIX = "/api"


def _cors_origins() -> list[str]:
    val = settings.cors_allow_origins
    if isinstance(val, str):
        v = val.strip()
        return ["*"] if v == "*" else [x.strip() for x in v.split(",") if x.strip()]
    if isinstance(val, list) and val:
        return val
    return ["*"]


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(title="Rent Billing Engine", version=settings.app_version)

    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(ops_router, prefix=API_PREFIX)
    app.include_router(invoices_router, prefix=API_PREFIX)
    app.include_router(payments_router, prefix=API_PREFIX)
    app.include_router(tenants_router, prefix=API_PREFIX)
    return app


app = create_app()
