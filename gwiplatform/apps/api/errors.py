from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gwiplatform.core.errors import (
    FeatureConfigError,
    HierarchyCycleError,
    InvalidRoleError,
    OrganizationConfigError,
    RoleConfigError,
    UpstreamUnavailableError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def error_body(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Every failure renders as {"error": <message>, "code": <CODE>}.
    payload: dict[str, Any] = {"error": message, "code": code}
    if details:
        payload["details"] = details
    return payload


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_body(code, message, details),
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Router-level 404/405 responses share the same body shape.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_body(code, message, details),
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Malformed input is a 400 across the API, including body/query validation.
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return JSONResponse(
        content=error_body("VALIDATION_ERROR", "Validation error", {"errors": errors}),
        status_code=400,
    )


_DOMAIN_VALIDATION_ERRORS = (
    FeatureConfigError,
    HierarchyCycleError,
    InvalidRoleError,
    OrganizationConfigError,
    RoleConfigError,
)


async def domain_validation_handler(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, _DOMAIN_VALIDATION_ERRORS):
        return JSONResponse(content=error_body("VALIDATION_ERROR", str(exc)), status_code=400)
    return await unhandled_exception_handler(request, exc)


async def upstream_unavailable_handler(
    request: Request, exc: UpstreamUnavailableError
) -> JSONResponse:
    return JSONResponse(
        content=error_body("UPSTREAM_UNAVAILABLE", "Upstream data API is unavailable"),
        status_code=502,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Log the cause server-side; the client only sees a stable generic message.
    logger.error(
        "unhandled_exception method=%s path=%s request_id=%s",
        request.method,
        request.url.path,
        getattr(request.state, "request_id", None),
        exc_info=exc,
    )
    return JSONResponse(
        content=error_body("INTERNAL_ERROR", "Internal server error"),
        status_code=500,
    )
