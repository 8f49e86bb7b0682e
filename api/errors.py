"""
api/errors.py — Exception Handlers
====================================
Every error leaves the API in one envelope:

    {"success": false, "error": "...", "category": "...", "code": "...", "retryable": false}
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.errors import LedgerError, RateLimitError, ValidationError

logger = logging.getLogger("digiid.api")


def install_exception_handlers(app: FastAPI):

    @app.exception_handler(LedgerError)
    async def on_ledger_error(request: Request, exc: LedgerError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} — {exc.message}")
        headers = None
        if isinstance(exc, RateLimitError) and exc.details.get("retry_after"):
            headers = {"Retry-After": str(exc.details["retry_after"])}
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err["loc"] if p != "body") or "body" for err in exc.errors())
        error = ValidationError(f"Invalid request: {fields}", code="INVALID_REQUEST")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal server error",
                "category": "INTERNAL_ERROR",
                "code": "INTERNAL_ERROR",
                "retryable": False,
            },
        )
