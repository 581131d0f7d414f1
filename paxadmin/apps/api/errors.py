from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from paxadmin.apps.api.response import error_response, is_versioned_request
from paxadmin.core.errors import (
    ConfigurationError,
    ConflictError,
    ExternalOperationError,
    ForbiddenError,
    NotFoundError,
    PaxAdminError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "REQUEST_VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "EXTERNAL_OPERATION_FAILED",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific first; subclasses inherit their parent's status.
_STATUS_BY_ERROR: tuple[tuple[type[PaxAdminError], int], ...] = (
    (ValidationError, 400),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (ExternalOperationError, 502),
    (ConfigurationError, 503),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for(exc: PaxAdminError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException details may be a plain message or a {"code", "message", ...} mapping.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def domain_exception_handler(request: Request, exc: PaxAdminError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        # Operators need the underlying failure; clients only get the message.
        logger.warning("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.message, "code": exc.code}, status_code=status_code)
    payload = error_response(request=request, code=exc.code, message=exc.message)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    headers = getattr(exc, "headers", None)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # No stack traces leave the service.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
