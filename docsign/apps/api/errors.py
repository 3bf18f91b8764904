from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docsign.apps.api.response import error_response
from docsign.core.errors import (
    ConflictingUpdate,
    CryptoFailure,
    DependencyUnavailable,
    DocsignError,
    IntegrityFailure,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationFailed,
)


logger = logging.getLogger(__name__)

_RETRY_AFTER_S = 5

# First match wins; subclasses inherit their parent's status.
_STATUS_BY_ERROR: tuple[tuple[type[DocsignError], int], ...] = (
    (Unauthorized, 403),
    (NotFound, 404),
    (InvalidState, 409),
    (ValidationFailed, 422),
    (ConflictingUpdate, 409),
    (DependencyUnavailable, 503),
    (CryptoFailure, 422),
    (IntegrityFailure, 422),
)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def status_for(exc: DocsignError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"), detail, None
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"), "Request failed", None


async def docsign_exception_handler(request: Request, exc: DocsignError) -> JSONResponse:
    status_code = status_for(exc)
    details: dict[str, Any] = {}
    if exc.reason:
        details["reason"] = exc.reason
    headers: dict[str, str] = {}
    if exc.retryable:
        details["retryable"] = True
        headers["Retry-After"] = str(_RETRY_AFTER_S)
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s", request.url.path, exc.code, exc_info=exc)
    payload = error_response(request=request, code=exc.code, message=exc.message, details=details or None)
    return JSONResponse(content=payload, status_code=status_code, headers=headers or None)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
