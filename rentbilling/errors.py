# rentbilling/errors.py
from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class BillingError(Exception):
    """Base class for errors raised by the billing core."""

    code = "billing_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidArgument(BillingError, ValueError):
    code = "invalid_argument"
    status_code = 400


class NotFound(BillingError, LookupError):
    code = "not_found"
    status_code = 404


class Forbidden(BillingError):
    code = "forbidden"
    status_code = 403


class Conflict(BillingError):
    """Idempotency violation or lost concurrency race; callers re-read and retry."""

    code = "conflict"
    status_code = 409
    retryable = True


class TransientError(BillingError):
    """A collaborator failed in a way that is worth retrying (timeouts, dropped connections)."""

    code = "transient"
    status_code = 503
    retryable = True


class AllocationFailed(BillingError):
    """The whole allocation was rolled back; the caller must retry it from the start."""

    code = "allocation_failed"
    status_code = 503
    retryable = True


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BillingError)
    async def _billing_error(request: Request, exc: BillingError) -> JSONResponse:
        body: dict[str, Any] = {"detail": exc.message, "error": exc.code}
        if exc.retryable:
            body["retryable"] = True
        if exc.details:
            body["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=body)
