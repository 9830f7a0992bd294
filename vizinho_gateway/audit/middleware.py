"""
Vizinho Virtual Gateway - Audit Middleware

Innermost middleware. Observes every request that reaches the application
and, once the response has been sent, appends a classified AuditRecord to
the audit log.

The middleware never changes the request or the response, and a failure
to persist a record is logged, never raised to the client.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from vizinho_gateway.audit.classification import (
    contains_personal_data,
    derive_action,
    derive_data_categories,
    derive_legal_basis,
    derive_resource,
    is_admin_action,
    is_financial_endpoint,
    is_gdpr_relevant,
    purpose_for,
    retention_for,
    severity_for,
)
from vizinho_gateway.audit.log import AuditLog
from vizinho_gateway.audit.models import AuditRecord
from vizinho_gateway.config import Settings
from vizinho_gateway.gateway.security import client_ip_from_scope
from vizinho_gateway.store import SecurityStore

logger = logging.getLogger(__name__)

# Bodies beyond this are not inspected for personal data
MAX_CAPTURE_BYTES = 64 * 1024


class _BoundedBuffer:
    """Collects chunks up to a byte cap and remembers if it overflowed."""

    def __init__(self, limit: int = MAX_CAPTURE_BYTES):
        self.limit = limit
        self.chunks: List[bytes] = []
        self.size = 0
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        if self.truncated or not chunk:
            return
        if self.size + len(chunk) > self.limit:
            self.truncated = True
            self.chunks = []
            return
        self.chunks.append(chunk)
        self.size += len(chunk)

    def json(self) -> Any:
        if self.truncated or not self.chunks:
            return None
        try:
            return json.loads(b"".join(self.chunks))
        except ValueError:
            return None


def build_audit_record(
    *,
    method: str,
    path: str,
    status_code: int,
    ip: str,
    duration_ms: float,
    user_agent: str = "unknown",
    principal: Any = None,
    request_id: Optional[str] = None,
    request_data: Any = None,
    response_data: Any = None,
    error_message: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> AuditRecord:
    """Classify one request/response exchange."""
    role = principal.role.value if principal is not None else None
    action = derive_action(method, path)
    resource = derive_resource(path)

    if error_message is None and status_code >= 400:
        error_message = f"HTTP {status_code}"

    return AuditRecord(
        id=str(uuid.uuid4()),
        timestamp=timestamp or datetime.now(timezone.utc),
        request_id=request_id,
        principal_id=principal.subject_id if principal is not None else None,
        principal_role=role,
        ip=ip,
        user_agent=user_agent[:512],
        action=action,
        resource=resource,
        method=method,
        endpoint=path,
        status_code=status_code,
        data_categories=tuple(derive_data_categories(path)),
        personal_data_accessed=contains_personal_data(request_data) or contains_personal_data(response_data),
        financial_data_accessed=is_financial_endpoint(path),
        gdpr_relevant=is_gdpr_relevant(path),
        admin_action=is_admin_action(method, path),
        legal_basis=derive_legal_basis(path, role),
        purpose=purpose_for(action),
        retention_period=retention_for(resource),
        severity=severity_for(action),
        duration_ms=round(duration_ms, 2),
        error_message=error_message,
    )


class AuditMiddleware:
    """
    Pure ASGI audit tap.

    Usage:
        app.add_middleware(AuditMiddleware, store=store, settings=settings)
    """

    EXCLUDE_PREFIXES = ("/health", "/docs", "/redoc", "/openapi.json")

    def __init__(self, app: ASGIApp, store: SecurityStore, settings: Settings) -> None:
        self.app = app
        self.settings = settings
        self.audit_log = AuditLog(store)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"].startswith(self.EXCLUDE_PREFIXES):
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        request_body = _BoundedBuffer()
        response_body = _BoundedBuffer()
        status_code = 500
        error_message = None

        async def receive_wrapper() -> Message:
            message = await receive()
            if message["type"] == "http.request":
                request_body.feed(message.get("body", b""))
            return message

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            elif message["type"] == "http.response.body":
                response_body.feed(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        except Exception as e:
            error_message = str(e) or type(e).__name__
            raise
        finally:
            await self._persist(
                scope,
                status_code,
                (time.perf_counter() - start_time) * 1000,
                request_body,
                response_body,
                error_message,
            )

    async def _persist(
        self,
        scope: Scope,
        status_code: int,
        duration_ms: float,
        request_body: _BoundedBuffer,
        response_body: _BoundedBuffer,
        error_message: Optional[str],
    ) -> None:
        state = scope.get("state") or {}
        try:
            record = build_audit_record(
                method=scope["method"],
                path=scope["path"],
                status_code=status_code,
                ip=state.get("client_ip") or client_ip_from_scope(scope, self.settings.TRUST_FORWARDED_HEADERS),
                duration_ms=duration_ms,
                user_agent=Headers(scope=scope).get("user-agent", "unknown"),
                principal=state.get("principal"),
                request_id=state.get("request_id"),
                request_data=request_body.json(),
                response_data=response_body.json(),
                error_message=error_message,
            )
            await self.audit_log.record(record)
        except Exception as e:
            # The response is already on the wire; losing the record is all that can happen
            logger.error(
                "Failed to persist audit record for %s %s: %s",
                scope.get("method"), scope.get("path"), e,
                exc_info=True,
            )
