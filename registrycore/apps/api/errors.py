from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from registrycore.apps.api.response import error_response
from registrycore.core.errors import (
    AuditChainConflictError,
    ChainVerificationUnavailableError,
    IdempotencyKeyInvalidError,
    RegistryError,
    StoreUnavailableError,
)
from registrycore.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Registry errors map to a fixed status and code; subclasses are listed before their bases.
_REGISTRY_ERROR_MAP: tuple[tuple[type[RegistryError], int, str], ...] = (
    (StoreUnavailableError, 503, "STORE_UNAVAILABLE"),
    (AuditChainConflictError, 503, "AUDIT_CHAIN_BUSY"),
    (IdempotencyKeyInvalidError, 400, "IDEMPOTENCY_KEY_INVALID"),
    (ChainVerificationUnavailableError, 409, "AUDIT_CHAIN_DISABLED"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def registry_exception_handler(request: Request, exc: RegistryError) -> JSONResponse:
    # A store outage must surface as 503, never as a 403 the client would cache.
    for error_type, status_code, code in _REGISTRY_ERROR_MAP:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 500, "INTERNAL_ERROR"
    if status_code >= 500:
        logger.warning(
            "registry_error path=%s code=%s error=%s", request.url.path, code, type(exc).__name__
        )
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code)


async def tenant_predicate_exception_handler(
    request: Request, exc: TenantPredicateError
) -> JSONResponse:
    # A missing tenant id is a programming error on the request path, not a client mistake.
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    payload = error_response(
        request=request,
        code="TENANT_PREDICATE_REQUIRED",
        message=exc.message,
    )
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_error path=%s", request.url.path)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)


def install_exception_handlers(app) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RegistryError, registry_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
