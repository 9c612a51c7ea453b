"""
Error taxonomy for the entitlement engine.

Library callers mostly see these folded into OperationResult (code + message).
The HTTP layer raises them and register_error_handlers() renders every
failure, ours or the framework's, as

    {"error": {"code", "message", "request_id"}, "detail": message}

with the request id echoed in x-request-id.
"""

import logging
from typing import Dict, Optional
from uuid import uuid4

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from entitlement_engine.core.logging import LOGGER_NAME, get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(AppError, ValueError):
    """Malformed license key, transaction hash or chain. Never mutates state."""
    code = "validation_error"
    status_code = 400


class ConfigurationError(AppError, ValueError):
    """Payment configuration failed its format invariants or is missing."""
    code = "configuration_error"
    status_code = 400


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str, *, remaining_ms: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.remaining_ms = remaining_ms

    def headers(self) -> Dict[str, str]:
        if not self.remaining_ms:
            return {}
        return {"Retry-After": str(max(1, self.remaining_ms // 1000))}


class NetworkError(AppError):
    """Outbound verification call failed or returned garbage."""
    code = "network_error"
    status_code = 502


class StoreConflictError(AppError):
    """Optimistic store update kept losing races and gave up."""
    code = "store_conflict"
    status_code = 409


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    status_code: int,
    request_id: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    rid = request_id or _request_id_for(request)
    response = JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "request_id": rid}, "detail": message},
    )
    response.headers["x-request-id"] = rid
    for name, value in (headers or {}).items():
        response.headers[name] = value
    return response


async def app_error_handler(request: Request, exc: AppError):
    logging.getLogger(LOGGER_NAME).log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "billing request failed: %s",
        exc.message,
        extra={"error_code": exc.code, "status": exc.status_code},
    )
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        request_id=exc.request_id,
        headers=exc.headers(),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    return error_response(
        request,
        code=code,
        message=str(exc.detail) if exc.detail else "HTTP error",
        status_code=exc.status_code,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{where}: {first.get('msg')}" if where else str(first.get("msg", "Invalid request"))
    return error_response(request, code=ValidationError.code, message=message, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logging.getLogger(LOGGER_NAME).error(
        "unhandled error in billing request", exc_info=exc, extra={"error_code": "internal_error"}
    )
    return error_response(request, code="internal_error", message="Unexpected error", status_code=500)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
