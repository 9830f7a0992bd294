"""
Vizinho Virtual Gateway - Security Composite Middleware

Pure ASGI middleware that runs every HTTP request through an ordered set of
checks. The first failing check wins and the request never reaches the
application:

    1. IP blacklist                     403 IP_BLACKLISTED
    2. SQL-injection signatures         400 INVALID_REQUEST
    3. XSS signatures                   400 INVALID_CONTENT
    4. Path-traversal signatures        400 INVALID_PATH
    5. Scanner User-Agent denylist      403 SUSPICIOUS_USER_AGENT
    6. Payload size ceiling             413 PAYLOAD_TOO_LARGE
    7. Forwarding-header spoofing       logged only
    8. Per-IP rate limit                429 RATE_LIMIT_EXCEEDED
       Sensitive-endpoint rate limit    429 RATE_LIMIT_EXCEEDED
       (optional) CSRF origin check     403 INVALID_ORIGIN
    9. Sanitization of body and query   rewritten request is replayed
   10. Hardening headers                on every response

Any attack-signature hit (2-4) counts against the client IP; enough hits
inside the suspicious window blacklist the IP.

Store failures fail open and are logged at ERROR.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

from starlette.datastructures import Headers, MutableHeaders, QueryParams
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from vizinho_gateway.config import Settings
from vizinho_gateway.errors import (
    AuthorizationError,
    GatewayError,
    PayloadTooLargeError,
    RateLimitError,
    ValidationError,
    build_error_response,
    log_error,
)
from vizinho_gateway.gateway.detector import (
    AttackCategory,
    looks_like_path_traversal,
    looks_like_sql_injection,
    looks_like_xss,
)
from vizinho_gateway.gateway.headers import apply_hardening_headers
from vizinho_gateway.store import BlacklistScope, SecurityStore, StoreError
from vizinho_gateway.store import counters

logger = logging.getLogger(__name__)

SUSPICIOUS_USER_AGENTS = (
    "sqlmap",
    "nikto",
    "nmap",
    "masscan",
    "nessus",
    "openvas",
    "burpsuite",
    "owasp",
    "havij",
    "pangolin",
)

CLIENT_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "x-originating-ip",
    "x-remote-ip",
    "x-cluster-client-ip",
)

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

_MARKUP_CHARS = re.compile(r"[<>]")
_SCRIPT_SCHEMES = re.compile(r"javascript:|vbscript:", re.IGNORECASE)
_NO_BODY = object()


# =============================================================================
# Helpers
# =============================================================================

def strip_markup(value: str) -> str:
    """Remove angle brackets and script URL schemes, then trim."""
    return _SCRIPT_SCHEMES.sub("", _MARKUP_CHARS.sub("", value)).strip()


def sanitize_value(value: Any, exempt_fields: FrozenSet[str] = frozenset()) -> Any:
    """Recursively sanitize every string inside nested dicts/lists."""
    if isinstance(value, str):
        return strip_markup(value)
    if isinstance(value, list):
        return [sanitize_value(item, exempt_fields) for item in value]
    if isinstance(value, dict):
        return {
            key: item if str(key).lower() in exempt_fields else sanitize_value(item, exempt_fields)
            for key, item in value.items()
        }
    return value


def redact_fields(value: Any, exempt_fields: FrozenSet[str]) -> Any:
    """Copy of value without exempt keys (at any depth)."""
    if isinstance(value, list):
        return [redact_fields(item, exempt_fields) for item in value]
    if isinstance(value, dict):
        return {
            key: redact_fields(item, exempt_fields)
            for key, item in value.items()
            if str(key).lower() not in exempt_fields
        }
    return value


def client_ip_from_scope(scope: Scope, trust_forwarded: bool = False) -> str:
    """
    Client IP for a request.

    X-Forwarded-For is only honoured when the gateway sits behind a trusted
    proxy; otherwise clients could pick their own rate-limit identity.
    """
    if trust_forwarded:
        forwarded = Headers(scope=scope).get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    client = scope.get("client")
    return client[0] if client else "unknown"


def _query_as_dict(items: List[Tuple[str, str]]) -> Dict[str, Any]:
    grouped: Dict[str, List[str]] = {}
    for key, value in items:
        grouped.setdefault(key, []).append(value)
    return {key: values[0] if len(values) == 1 else values for key, values in grouped.items()}


async def read_body(receive: Receive, limit: int) -> Tuple[bytes, bool]:
    """
    Drain the request body.

    Returns:
        (body, too_large). Reading stops as soon as the limit is crossed.
    """
    chunks: List[bytes] = []
    size = 0
    more_body = True
    while more_body:
        message = await receive()
        if message["type"] != "http.request":
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > limit:
            return b"", True
        chunks.append(chunk)
        more_body = message.get("more_body", False)
    return b"".join(chunks), False


# =============================================================================
# Request snapshot
# =============================================================================

@dataclass
class InspectedRequest:
    """Everything the checks need, captured once per request."""
    method: str
    path: str
    raw_path: str
    headers: Headers
    client_ip: str
    query_items: List[Tuple[str, str]]
    body: bytes
    parsed_body: Any
    too_large: bool
    scan_text: str = ""

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "unknown")

    @property
    def is_form(self) -> bool:
        return "application/x-www-form-urlencoded" in self.headers.get("content-type", "")

    @classmethod
    async def capture(
        cls,
        scope: Scope,
        receive: Receive,
        settings: Settings,
    ) -> "InspectedRequest":
        headers = Headers(scope=scope)
        limit = settings.MAX_PAYLOAD_BYTES

        try:
            declared = int(headers.get("content-length", "0"))
        except ValueError:
            declared = 0

        if declared > limit:
            # Do not pull an oversized body into memory just to reject it
            body, too_large = b"", True
        else:
            body, too_large = await read_body(receive, limit)

        content_type = headers.get("content-type", "")
        parsed_body: Any = _NO_BODY
        if body and "json" in content_type:
            try:
                parsed_body = json.loads(body)
            except ValueError:
                parsed_body = body.decode("utf-8", errors="replace")
        elif body and "application/x-www-form-urlencoded" in content_type:
            parsed_body = _query_as_dict(parse_qsl(body.decode("latin-1"), keep_blank_values=True))

        return cls(
            method=scope["method"],
            path=scope["path"],
            raw_path=(scope.get("raw_path") or b"").decode("latin-1"),
            headers=headers,
            client_ip=client_ip_from_scope(scope, settings.TRUST_FORWARDED_HEADERS),
            query_items=QueryParams(scope.get("query_string", b"")).multi_items(),
            body=body,
            parsed_body=parsed_body,
            too_large=too_large,
        )


# =============================================================================
# Pipeline
# =============================================================================

Check = Callable[[InspectedRequest], Awaitable[Optional[GatewayError]]]


class SecurityPipeline:
    """
    Ordered request checks; run() returns the first failure or None.

    Usage:
        pipeline = SecurityPipeline(store, settings)
        error = await pipeline.run(inspected)
    """

    def __init__(self, store: SecurityStore, settings: Settings):
        self.store = store
        self.settings = settings
        self.exempt_fields = frozenset(f.lower() for f in settings.SCAN_EXEMPT_FIELDS)
        self.checks: List[Check] = [
            self.check_ip_blacklist,
            self.check_sql_injection,
            self.check_xss,
            self.check_path_traversal,
            self.check_user_agent,
            self.check_payload_size,
            self.check_spoofed_ip_headers,
            self.check_general_rate_limit,
            self.check_sensitive_rate_limit,
            self.check_origin,
        ]

    def serialize_for_scan(self, request: InspectedRequest) -> str:
        body = None if request.parsed_body is _NO_BODY else request.parsed_body
        payload = {
            "body": redact_fields(body, self.exempt_fields),
            "query": redact_fields(_query_as_dict(request.query_items), self.exempt_fields),
        }
        return json.dumps(payload, ensure_ascii=False, default=str)

    async def run(self, request: InspectedRequest) -> Optional[GatewayError]:
        request.scan_text = self.serialize_for_scan(request)
        for check in self.checks:
            error = await check(request)
            if error is not None:
                return error
        return None

    # -- 1 -----------------------------------------------------------------

    async def check_ip_blacklist(self, request: InspectedRequest) -> Optional[GatewayError]:
        try:
            reason = await self.store.get_blacklist_reason(BlacklistScope.IP, request.client_ip)
        except StoreError as e:
            logger.error("IP blacklist lookup failed for %s: %s", request.client_ip, e)
            return None

        if reason is not None:
            logger.warning(
                "Blocked request from blacklisted IP %s (%s) to %s",
                request.client_ip, reason, request.path,
            )
            await counters.record_metric(self.store, counters.BLACKLISTED_REQUESTS)
            return AuthorizationError("Access denied", code="IP_BLACKLISTED")
        return None

    # -- 2-4 ---------------------------------------------------------------

    async def record_suspicious(self, request: InspectedRequest, category: AttackCategory) -> None:
        """Count an attack hit against the IP; blacklist once over threshold."""
        key = f"suspicious:{request.client_ip}"
        try:
            attempts = await self.store.increment_rate_counter(key, self.settings.SUSPICIOUS_WINDOW_SECONDS)
            if attempts >= self.settings.SUSPICIOUS_THRESHOLD:
                await self.store.add_to_blacklist(
                    BlacklistScope.IP,
                    request.client_ip,
                    category.value,
                    self.settings.ATTACK_BLACKLIST_SECONDS,
                )
                logger.error(
                    "IP %s blacklisted after %d suspicious requests (last: %s)",
                    request.client_ip, attempts, category.value,
                )
                await counters.record_metric(self.store, counters.BLOCKED_IPS)
        except StoreError as e:
            logger.error("Suspicious-activity tracking failed for %s: %s", request.client_ip, e)

    async def _attack_detected(
        self,
        request: InspectedRequest,
        category: AttackCategory,
        error: GatewayError,
    ) -> GatewayError:
        logger.warning(
            "%s attempt detected from %s on %s %s",
            category.value, request.client_ip, request.method, request.path,
            extra={"client_ip": request.client_ip, "attack": category.value},
        )
        await counters.record_metric(self.store, counters.attack_metric(category.value))
        await self.record_suspicious(request, category)
        return error

    async def check_sql_injection(self, request: InspectedRequest) -> Optional[GatewayError]:
        if looks_like_sql_injection(request.scan_text):
            return await self._attack_detected(
                request, AttackCategory.SQL_INJECTION,
                ValidationError("Invalid request", code="INVALID_REQUEST"),
            )
        return None

    async def check_xss(self, request: InspectedRequest) -> Optional[GatewayError]:
        if looks_like_xss(request.scan_text):
            return await self._attack_detected(
                request, AttackCategory.XSS,
                ValidationError("Content not allowed", code="INVALID_CONTENT"),
            )
        return None

    async def check_path_traversal(self, request: InspectedRequest) -> Optional[GatewayError]:
        if any(
            looks_like_path_traversal(text)
            for text in (request.path, request.raw_path, request.scan_text)
        ):
            return await self._attack_detected(
                request, AttackCategory.PATH_TRAVERSAL,
                ValidationError("Invalid path", code="INVALID_PATH"),
            )
        return None

    # -- 5-8 ---------------------------------------------------------------

    async def check_user_agent(self, request: InspectedRequest) -> Optional[GatewayError]:
        user_agent = request.user_agent.lower()
        if any(agent in user_agent for agent in SUSPICIOUS_USER_AGENTS):
            logger.warning("Scanner user agent %r from %s", request.user_agent, request.client_ip)
            await counters.record_metric(self.store, counters.SUSPICIOUS_USER_AGENTS)
            return AuthorizationError("Access denied", code="SUSPICIOUS_USER_AGENT")
        return None

    async def check_payload_size(self, request: InspectedRequest) -> Optional[GatewayError]:
        if request.too_large:
            logger.warning(
                "Payload over %d bytes from %s on %s",
                self.settings.MAX_PAYLOAD_BYTES, request.client_ip, request.path,
            )
            return PayloadTooLargeError()
        return None

    async def check_spoofed_ip_headers(self, request: InspectedRequest) -> Optional[GatewayError]:
        present = [name for name in CLIENT_IP_HEADERS if name in request.headers]
        if len(present) > 2:
            logger.warning(
                "Multiple client-IP headers from %s (possible spoofing): %s",
                request.client_ip, ", ".join(present),
            )
        return None

    async def check_general_rate_limit(self, request: InspectedRequest) -> Optional[GatewayError]:
        key = f"rate_limit:{request.client_ip}"
        try:
            result = await self.store.check_rate_limit(
                key,
                self.settings.GENERAL_RATE_LIMIT,
                self.settings.GENERAL_RATE_WINDOW_SECONDS,
            )
        except StoreError as e:
            logger.error("Rate limit check failed for %s: %s", key, e)
            return None

        if not result.allowed:
            logger.warning(
                "Rate limit exceeded for %s on %s %s (%d requests)",
                request.client_ip, request.method, request.path, result.count,
            )
            await counters.record_metric(self.store, counters.RATE_LIMIT_VIOLATIONS)
            return RateLimitError(
                "Too many requests from this IP, try again later.",
                retry_after=result.retry_after,
            )
        return None

    def is_sensitive(self, path: str) -> bool:
        return any(path.startswith(endpoint) for endpoint in self.settings.SENSITIVE_ENDPOINTS)

    async def check_sensitive_rate_limit(self, request: InspectedRequest) -> Optional[GatewayError]:
        if not self.is_sensitive(request.path):
            return None

        key = f"rate_limit:{request.client_ip}:{request.path}"
        try:
            result = await self.store.check_rate_limit(
                key,
                self.settings.SENSITIVE_RATE_LIMIT,
                self.settings.SENSITIVE_RATE_WINDOW_SECONDS,
            )
        except StoreError as e:
            logger.error("Rate limit check failed for %s: %s", key, e)
            return None

        if not result.allowed:
            logger.warning(
                "Sensitive endpoint rate limit exceeded: %s %s (%d requests)",
                request.client_ip, request.path, result.count,
            )
            await counters.record_metric(self.store, counters.RATE_LIMIT_VIOLATIONS)
            return RateLimitError(
                "Too many attempts. Try again in a few minutes.",
                retry_after=result.retry_after,
            )
        return None

    async def check_origin(self, request: InspectedRequest) -> Optional[GatewayError]:
        if not self.settings.CSRF_CHECK_ENABLED or request.method not in STATE_CHANGING_METHODS:
            return None

        origin = request.headers.get("origin") or request.headers.get("referer")
        if not origin or not any(origin.startswith(allowed) for allowed in self.settings.ALLOWED_ORIGINS):
            logger.warning("Rejected %s from origin %r", request.method, origin)
            return AuthorizationError("Origin not allowed", code="INVALID_ORIGIN")
        return None

    # -- 9 -----------------------------------------------------------------

    def sanitize(self, request: InspectedRequest) -> Tuple[Optional[bytes], Optional[bytes]]:
        """
        Sanitized (body, query_string), each None when nothing changed.
        """
        new_body = None
        if isinstance(request.parsed_body, (dict, list)):
            cleaned = sanitize_value(request.parsed_body, self.exempt_fields)
            if cleaned != request.parsed_body:
                if request.is_form:
                    new_body = urlencode(cleaned, doseq=True).encode("latin-1")
                else:
                    new_body = json.dumps(cleaned, ensure_ascii=False).encode("utf-8")

        new_query = None
        cleaned_items = [
            (key, value if key.lower() in self.exempt_fields else strip_markup(value))
            for key, value in request.query_items
        ]
        if cleaned_items != request.query_items:
            new_query = urlencode(cleaned_items).encode("latin-1")

        return new_body, new_query


# =============================================================================
# Middleware
# =============================================================================

def harden_send(send: Send) -> Send:
    """Add hardening headers and strip server-identifying ones."""
    async def send_wrapper(message: Message) -> None:
        if message["type"] == "http.response.start":
            message.setdefault("headers", [])
            apply_hardening_headers(MutableHeaders(scope=message))
        await send(message)

    return send_wrapper


def _replay_receive(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class SecurityMiddleware:
    """
    ASGI wrapper around SecurityPipeline.

    The store is injected by the application factory; its lifecycle belongs
    to the application lifespan.
    """

    def __init__(self, app: ASGIApp, store: SecurityStore, settings: Settings) -> None:
        self.app = app
        self.settings = settings
        self.pipeline = SecurityPipeline(store, settings)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        send = harden_send(send)
        request = await InspectedRequest.capture(scope, receive, self.settings)

        error = await self.pipeline.run(request)
        if error is not None:
            log_error(error, request.path, request.method)
            state = scope.get("state") or {}
            response = build_error_response(
                error,
                request.path,
                request.method,
                state.get("request_id"),
                include_details=not self.settings.is_production,
            )
            await response(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        state["client_ip"] = request.client_ip

        body = request.body
        new_body, new_query = self.pipeline.sanitize(request)
        if new_body is not None or new_query is not None:
            scope = dict(scope)
            if new_query is not None:
                scope["query_string"] = new_query
            if new_body is not None:
                body = new_body
                headers = MutableHeaders(scope=scope)
                headers["content-length"] = str(len(body))

        await self.app(scope, _replay_receive(body, receive), send)
