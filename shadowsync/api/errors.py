"""Structured error responses.

Domain errors map onto HTTP statuses so callers can tell what to retry:
transient backend failures are 503 with ``Retry-After``; validation and
permanent failures are final.
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
import structlog
from ..errors import (
    DuplicateEventError,
    NotFoundError,
    PermanentBackendError,
    RetryExhaustedError,
    ShadowSyncError,
    SinkError,
    TransientBackendError,
    ValidationError,
)

log = structlog.get_logger()

RETRY_AFTER_SECONDS = 5

# first match wins, so subclasses come before their bases
STATUS_CODES: list[tuple[type[ShadowSyncError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (TransientBackendError, 503),
    (PermanentBackendError, 409),
    (DuplicateEventError, 409),
    (RetryExhaustedError, 409),
    (SinkError, 502),
]


def status_for(exc: ShadowSyncError) -> int:
    for exc_type, status_code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def _error_body(request: Request, error: str, message: str, status_code: int, retryable: bool) -> dict:
    return {
        "error": error,
        "message": message,
        "status_code": status_code,
        "retryable": retryable,
        "correlation_id": getattr(request.state, "correlation_id", None),
        "path": str(request.url.path),
    }


async def shadowsync_error_handler(request: Request, exc: ShadowSyncError) -> JSONResponse:
    status_code = status_for(exc)
    log.warning(
        "http.domain_error",
        status_code=status_code,
        error_type=exc.__class__.__name__,
        error=str(exc),
        path=request.url.path
    )
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content=_error_body(request, exc.__class__.__name__, str(exc), status_code, exc.retryable),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    log.warning(
        "http.exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.__class__.__name__, exc.detail, exc.status_code, False),
        headers=exc.headers,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.error(
        "unhandled.exception",
        error=str(exc),
        error_type=exc.__class__.__name__,
        path=request.url.path,
        exc_info=exc
    )
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "InternalServerError", "An unexpected error occurred", 500, False),
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(ShadowSyncError, shadowsync_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
