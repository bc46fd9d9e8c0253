"""
Exception handlers rendering billing errors as stable JSON bodies.

Body shape: {success: false, errorKind, errorMessage, reason?, retryable}
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from billing_engine.errors import BillingError

logger = logging.getLogger(__name__)


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    log = logger.warning if exc.http_status < 500 else logger.error
    log("Request failed", extra={
        "path": request.url.path,
        "error_kind": exc.kind,
        "reason": exc.reason,
        "error": exc.message,
    })
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "errorKind": "ValidationError",
            "errorMessage": f"{field}: {message}" if field else message,
            "reason": "InvalidRequest",
            "retryable": False,
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
