"""
Vizinho Virtual Gateway - Request Logging Middleware

Outermost application middleware:
- Request ID injection for tracing (X-Request-ID)
- Request timing (X-Response-Time)
- One structured log line per request, level by status code
- Daily request and error counters for the metrics endpoints

Health checks are neither logged nor counted.
"""

import logging
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from vizinho_gateway.store import counters

logger = logging.getLogger("vizinho_gateway.requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tracing and access logging for all incoming requests.

    The request id is stored on request.state so error bodies, audit records
    and downstream proxy calls can carry it.
    """

    EXCLUDE_PREFIXES = ("/health",)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Assign a request id, time the request, log the outcome."""
        request_id = request.headers.get("X-Request-ID", "")[:64] or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        path = request.url.path
        if not path.startswith(self.EXCLUDE_PREFIXES):
            status_code = response.status_code
            if status_code >= 500:
                log = logger.error
            elif status_code >= 400:
                log = logger.warning
            else:
                log = logger.info
            log(
                "%s %s -> %d (%.2fms)",
                request.method, path, status_code, duration_ms,
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": path,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                    "client_ip": request.client.host if request.client else "unknown",
                },
            )
            await self.count(request, status_code)

        return response

    @staticmethod
    async def count(request: Request, status_code: int) -> None:
        store = request.app.state.store
        await counters.record_metric(store, counters.REQUESTS)
        if status_code >= 500:
            await counters.record_metric(store, counters.SERVER_ERRORS)
        elif status_code >= 400:
            await counters.record_metric(store, counters.CLIENT_ERRORS)
