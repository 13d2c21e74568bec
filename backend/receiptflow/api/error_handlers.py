"""
Custom exception handlers for FastAPI.
Translate domain errors into stable JSON bodies and HTTP statuses.
"""

import logging

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY, HTTP_500_INTERNAL_SERVER_ERROR

from receiptflow.core.exceptions import ReceiptflowError, RemoteUnavailableError
from receiptflow.core.observability import sentry_capture

logger = logging.getLogger(__name__)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def receiptflow_exception_handler(request: Request, exc: ReceiptflowError):
    headers = {}
    if isinstance(exc, RemoteUnavailableError):
        headers["Retry-After"] = "5"
    if int(exc.status_code) >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=int(exc.status_code), content=exc.to_dict(), headers=headers or None)


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    sentry_capture(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc),
        },
    )
