"""
Vizinho Virtual Gateway - Error Taxonomy and Translation

Every middleware and route either resolves a request itself or raises a
GatewayError. A single translator turns errors into the standard JSON body:

    {error, code, timestamp, path, method, request_id[, details, stack]}

`details` and `stack` are only included outside production.

Unexpected (non-operational) errors are logged at CRITICAL and sent to the
alerting path; operational errors are logged at a level matching their
status code.
"""

import asyncio
import logging
import os
import signal
import sys
import threading
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vizinho_gateway.config import Settings
from vizinho_gateway.gateway.headers import apply_hardening_headers
from vizinho_gateway.store.base import StoreError

logger = logging.getLogger(__name__)


# =============================================================================
# Error Taxonomy
# =============================================================================

class GatewayError(Exception):
    """Base class for errors the gateway knows how to answer."""

    status_code = 500
    default_code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
        headers: Optional[Dict[str, str]] = None,
        is_operational: bool = True,
    ):
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details
        self.headers = headers or {}
        self.is_operational = is_operational
        super().__init__(self.message)


class ValidationError(GatewayError):
    status_code = 400
    default_code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class AuthenticationError(GatewayError):
    status_code = 401
    default_code = "AUTHENTICATION_ERROR"
    default_message = "Authentication required"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, **kwargs):
        super().__init__(message, code, **kwargs)
        self.headers.setdefault("WWW-Authenticate", "Bearer")


class AuthorizationError(GatewayError):
    status_code = 403
    default_code = "AUTHORIZATION_ERROR"
    default_message = "Access denied"


class NotFoundError(GatewayError):
    status_code = 404
    default_code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(GatewayError):
    status_code = 409
    default_code = "CONFLICT"
    default_message = "Resource conflict"


class PayloadTooLargeError(GatewayError):
    status_code = 413
    default_code = "PAYLOAD_TOO_LARGE"
    default_message = "Request payload too large"


class RateLimitError(GatewayError):
    status_code = 429
    default_code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, code, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.headers.setdefault("Retry-After", str(max(retry_after, 1)))


class ServiceUnavailableError(GatewayError):
    status_code = 503
    default_code = "SERVICE_UNAVAILABLE"
    default_message = "Service temporarily unavailable"


class DatabaseError(GatewayError):
    status_code = 500
    default_code = "DATABASE_ERROR"
    default_message = "Database operation failed"


class ExternalServiceError(GatewayError):
    status_code = 502
    default_code = "EXTERNAL_SERVICE_ERROR"
    default_message = "Upstream service error"


# Codes for plain HTTPExceptions raised by Starlette/FastAPI internals
HTTP_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "AUTHENTICATION_ERROR",
    403: "AUTHORIZATION_ERROR",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_ERROR",
    502: "EXTERNAL_SERVICE_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


# =============================================================================
# Translation
# =============================================================================

def build_error_body(
    error: GatewayError,
    path: str,
    method: str,
    request_id: Optional[str] = None,
    include_details: bool = False,
) -> Dict[str, Any]:
    """Standard JSON error body for a GatewayError."""
    body: Dict[str, Any] = {
        "error": error.message,
        "code": error.code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": path,
        "method": method,
        "request_id": request_id,
    }
    if include_details:
        if error.details:
            body["details"] = error.details
        if not error.is_operational and error.__cause__ is not None:
            cause = error.__cause__
            body["stack"] = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )
    return body


def build_error_response(
    error: GatewayError,
    path: str,
    method: str,
    request_id: Optional[str] = None,
    include_details: bool = False,
) -> JSONResponse:
    """Translate a GatewayError into the response sent to the client."""
    return JSONResponse(
        status_code=error.status_code,
        content=build_error_body(error, path, method, request_id, include_details),
        headers=error.headers or None,
    )


def log_error(error: GatewayError, path: str, method: str) -> None:
    """Log at a severity proportional to the status code."""
    extra = {"error_code": error.code, "path": path, "method": method}
    if not error.is_operational:
        logger.critical("Unexpected error on %s %s: %s", method, path, error.message, extra=extra)
    elif error.status_code >= 500:
        logger.error("%s on %s %s: %s", error.code, method, path, error.message, extra=extra)
    else:
        logger.warning("%s on %s %s: %s", error.code, method, path, error.message, extra=extra)


async def notify_critical_error(
    settings: Settings,
    error: BaseException,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Alerting path for non-operational errors.

    Always logs at CRITICAL; additionally posts to ALERT_WEBHOOK_URL when one
    is configured. Delivery failures are logged, never raised.
    """
    payload = {
        "service": settings.APP_NAME,
        "environment": settings.ENVIRONMENT,
        "error": repr(error),
        "context": context or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    logger.critical("Critical error: %r", error, extra={"alert": payload})

    if not settings.ALERT_WEBHOOK_URL:
        return

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(settings.ALERT_WEBHOOK_URL, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Alert webhook delivery failed: %s", e)


# =============================================================================
# Exception Handlers
# =============================================================================

def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")


def _include_details(request: Request) -> bool:
    return not request.app.state.settings.is_production


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Handle GatewayError raised by routes and dependencies."""
    log_error(exc, request.url.path, request.method)
    if not exc.is_operational:
        await notify_critical_error(
            request.app.state.settings, exc,
            {"path": request.url.path, "method": request.method},
        )
    return build_error_response(
        exc, request.url.path, request.method, _request_id(request), _include_details(request)
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Map framework HTTP exceptions onto the standard body."""
    error = GatewayError(
        message=str(exc.detail) if exc.detail else f"HTTP {exc.status_code}",
        code=HTTP_STATUS_CODES.get(exc.status_code, "HTTP_ERROR"),
        headers=getattr(exc, "headers", None),
    )
    error.status_code = exc.status_code
    if exc.status_code == 404:
        error.message = "Route not found"
    return build_error_response(
        error, request.url.path, request.method, _request_id(request), _include_details(request)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/query validation failures become 400 VALIDATION_ERROR."""
    details = []
    for item in exc.errors():
        loc = [str(part) for part in item.get("loc", []) if part not in ("body", "query", "path")]
        value = item.get("input")
        details.append({
            "field": ".".join(loc),
            "message": item.get("msg", ""),
            "value": value if isinstance(value, (str, int, float, bool)) else None,
        })

    logger.info("Validation error on %s: %d issues", request.url.path, len(details))

    error = ValidationError("Request validation failed", details=details)
    return build_error_response(
        error, request.url.path, request.method, _request_id(request), _include_details(request)
    )


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """
    Store outages reaching a route (admin writes, logout) become 503.

    Checks in the request path fail open before getting here.
    """
    error = ServiceUnavailableError("Security store unavailable", code="STORE_UNAVAILABLE")
    error.__cause__ = exc
    log_error(error, request.url.path, request.method)
    return build_error_response(
        error, request.url.path, request.method, _request_id(request), _include_details(request)
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything outside the taxonomy is non-operational."""
    logger.critical(
        "Unhandled exception on %s %s: %s",
        request.method, request.url.path, exc,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    await notify_critical_error(
        request.app.state.settings, exc,
        {"path": request.url.path, "method": request.method},
    )

    error = GatewayError(is_operational=False)
    error.__cause__ = exc
    response = build_error_response(
        error, request.url.path, request.method, _request_id(request), _include_details(request)
    )
    # Served by ServerErrorMiddleware, outside the security middleware
    apply_hardening_headers(response.headers)
    return response


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the app."""
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


# =============================================================================
# Process-level Hooks
# =============================================================================

def _terminate_for_restart() -> None:
    """Ask the server to shut down so the supervisor restarts the process."""
    os.kill(os.getpid(), signal.SIGTERM)


def install_process_hooks(settings: Settings) -> None:
    """
    Log uncaught exceptions from the main thread and worker threads.

    In production the process is terminated afterwards; nothing keeps
    serving after an unknown-state failure.
    """
    previous_excepthook = sys.excepthook

    def excepthook(exc_type, exc_value, exc_tb):
        logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
        previous_excepthook(exc_type, exc_value, exc_tb)

    def thread_excepthook(args):
        logger.critical(
            "Uncaught exception in thread %s",
            args.thread.name if args.thread else "unknown",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        if settings.is_production:
            _terminate_for_restart()

    sys.excepthook = excepthook
    threading.excepthook = thread_excepthook


def install_loop_exception_handler(loop: asyncio.AbstractEventLoop, settings: Settings) -> None:
    """Handle exceptions from tasks nobody awaited."""

    def handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        logger.critical(
            "Unhandled exception in event loop: %s",
            context.get("message", "no message"),
            exc_info=(type(exc), exc, exc.__traceback__) if exc else None,
        )
        if settings.is_production:
            _terminate_for_restart()

    loop.set_exception_handler(handler)
