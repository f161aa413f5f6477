from __future__ import annotations

import logging
from typing import Any, Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agriqcert.apps.api.response import error_response, is_versioned_request
from agriqcert.core.errors import AgriQCertError, AuthenticationError, ProviderError


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "PROVIDER_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _respond(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    legacy_detail: Any = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    # Unversioned aliases keep FastAPI's {"detail": ...} error shape.
    if is_versioned_request(request):
        content = error_response(request=request, code=code, message=message, details=details)
    else:
        content = {"detail": message if legacy_detail is None else legacy_detail}
    return JSONResponse(content=content, status_code=status_code, headers=dict(headers or {}))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    code = _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    details: dict[str, Any] | None = None
    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or "Request failed")
        details = {key: value for key, value in detail.items() if key not in ("code", "message")} or None
    else:
        message = str(detail) if detail else "Request failed"
    return _respond(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        legacy_detail=detail,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    return _respond(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
        legacy_detail=errors,
    )


async def domain_exception_handler(request: Request, exc: AgriQCertError) -> JSONResponse:
    message = str(exc) or exc.code
    details = None
    if isinstance(exc, AuthenticationError):
        # Fixed text: never reveal which credential a rejected webhook named.
        message = "Invalid webhook signature"
    elif isinstance(exc, ProviderError) and exc.status_code is not None:
        details = {"upstream_status": exc.status_code}
    if exc.http_status >= 500:
        logger.warning(
            "domain_error path=%s status=%s code=%s message=%s",
            request.url.path,
            exc.http_status,
            exc.code,
            message,
        )
    return _respond(request, status_code=exc.http_status, code=exc.code, message=message, details=details)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _respond(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Internal server error",
        legacy_detail="Internal Server Error",
    )


def register_exception_handlers(app: FastAPI) -> None:
    # fastapi.HTTPException subclasses the Starlette one, so one handler covers both.
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(AgriQCertError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
