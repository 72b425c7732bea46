"""
Application errors and the JSON error envelope.

Raise an AppError subclass anywhere below the routes; the handlers registered in
main.create_app turn it into {"error": {code, message, request_id}, "detail"}
with a matching x-request-id header.
"""

import logging
import builtins
from typing import Optional
from uuid import uuid4

from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from sceneaccess.core.logging import get_request_id


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


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class OriginRejectedError(PermissionError):
    """Mutating request did not come from the site's own origin."""

    def __init__(self, reason: str, **kwargs):
        # The reason is logged, never echoed to the caller
        super().__init__("Forbidden", **kwargs)
        self.reason = reason


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str = "Too many requests", *, retry_after_seconds: int = 1, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after_seconds = max(0, int(retry_after_seconds))


class StorageError(AppError):
    """A backing store could not be read or written."""
    code = "storage_error"
    status_code = 500


class EntitlementResolutionError(AppError):
    """Access could not be determined; never treated as granted or denied."""
    code = "resolution_failed"
    status_code = 500


class FreeSlotGrantError(AppError):
    code = "grant_failed"
    status_code = 500


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


logger = logging.getLogger("sceneaccess.errors")


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(request: Request, status_code: int, code: str, message: str, request_id: Optional[str] = None) -> JSONResponse:
    """The one error shape every route returns."""
    rid = request_id or _request_id(request)
    response = JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "request_id": rid}, "detail": message},
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    server_side = exc.status_code >= 500
    extra = {"error_code": exc.code, "status": exc.status_code, "path": request.url.path}
    if isinstance(exc, OriginRejectedError):
        extra["reason"] = exc.reason
    # 5xx messages stay generic; the chained cause goes to the log only
    logger.log(
        logging.ERROR if server_side else logging.WARNING,
        "app.error",
        exc_info=exc.__cause__ if server_side else None,
        extra=extra,
    )
    response = error_response(request, exc.status_code, exc.code, exc.message, exc.request_id)
    if isinstance(exc, RateLimitError):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    return response


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"error_code": code, "status": exc.status_code, "path": request.url.path})
    return error_response(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.warning("request.invalid", extra={"error_code": "validation_error", "status": 400, "path": request.url.path})
    return error_response(request, 400, "validation_error", "Malformed request body")


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    # Runs outside RequestIdMiddleware, so the id is passed explicitly
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error", "status": 500})
    return error_response(request, 500, "internal_error", "Unexpected error", rid)
