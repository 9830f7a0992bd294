"""
Vizinho Virtual Gateway - Downstream Service Proxy

Forwards authenticated API calls to the owning microservice, chosen by
path prefix. The verified principal travels downstream as headers:

    X-User-Id, X-User-Role, X-Building-Id, X-Request-ID

Client-supplied copies of those headers are dropped; downstream services
trust them because only the gateway can set them.

Routes under /api/buildings/{building_id} are additionally restricted to
the caller's own building (admins excepted).
"""

import logging
from typing import Dict, Mapping, Optional, Tuple

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from vizinho_gateway.auth.dependencies import get_current_principal, require_building_scope
from vizinho_gateway.auth.models import Principal
from vizinho_gateway.config import Settings
from vizinho_gateway.errors import ExternalServiceError, NotFoundError, ServiceUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

# Path prefix -> service name in settings.SERVICE_URLS
SERVICE_ROUTES: Tuple[Tuple[str, str], ...] = (
    ("/api/users", "user-management"),
    ("/api/buildings", "building-management"),
    ("/api/apartments", "building-management"),
    ("/api/finances", "financial"),
    ("/api/payments", "financial"),
    ("/api/invoices", "financial"),
    ("/api/transactions", "financial"),
    ("/api/messages", "communication"),
    ("/api/notifications", "communication"),
    ("/api/communications", "communication"),
    ("/api/assemblies", "assembly"),
    ("/api/marketplace", "marketplace"),
    ("/api/professionals", "professional"),
    ("/api/security", "security"),
)

IDENTITY_HEADERS = ("x-user-id", "x-user-role", "x-building-id")

# Not forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})

# httpx has already decoded the body
STRIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding", "server", "x-powered-by"}


def resolve_service(path: str, service_urls: Mapping[str, str]) -> Optional[Tuple[str, str]]:
    """
    Find the service owning a path.

    Returns:
        (service_name, base_url), or None for unknown prefixes
    """
    for prefix, service in SERVICE_ROUTES:
        if path == prefix or path.startswith(prefix + "/"):
            base_url = service_urls.get(service)
            if base_url:
                return service, base_url.rstrip("/")
    return None


def downstream_headers(
    incoming: Mapping[str, str],
    principal: Principal,
    request_id: Optional[str],
) -> Dict[str, str]:
    """Incoming headers minus hop-by-hop and identity headers, plus the principal."""
    headers = {
        name: value
        for name, value in incoming.items()
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() not in IDENTITY_HEADERS
    }
    headers["X-User-Id"] = principal.subject_id
    headers["X-User-Role"] = principal.role.value
    if principal.building_id:
        headers["X-Building-Id"] = principal.building_id
    if request_id:
        headers["X-Request-ID"] = request_id
    return headers


class ServiceProxy:
    """
    Forwards one request to the owning service.

    Usage:
        proxy = ServiceProxy(http_client, settings)
        response = await proxy.forward(request, principal)
    """

    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self.client = client
        self.settings = settings

    async def forward(self, request: Request, principal: Principal) -> Response:
        path = request.url.path
        target = resolve_service(path, self.settings.SERVICE_URLS)
        if target is None:
            raise NotFoundError("Route not found", code="NOT_FOUND")
        service, base_url = target

        request_id = getattr(request.state, "request_id", None)
        url = f"{base_url}{path}"

        try:
            upstream = await self.client.request(
                request.method,
                url,
                params=request.url.query or None,
                headers=downstream_headers(request.headers, principal, request_id),
                content=await request.body(),
                timeout=self.settings.PROXY_TIMEOUT_SECONDS,
            )
        except httpx.ConnectError as e:
            logger.error("Proxy error - %s unreachable: %s", service, e)
            raise ServiceUnavailableError(
                "Service temporarily unavailable", code="SERVICE_UNAVAILABLE",
            )
        except httpx.TimeoutException as e:
            logger.error("Proxy error - %s timed out: %s", service, e)
            raise ExternalServiceError("Upstream service timed out", code="SERVICE_TIMEOUT")
        except httpx.HTTPError as e:
            logger.error("Proxy error - %s: %s", service, e)
            raise ExternalServiceError()

        logger.debug("Proxied %s %s -> %s (%d)", request.method, path, service, upstream.status_code)

        headers = {
            name: value
            for name, value in upstream.headers.items()
            if name.lower() not in STRIPPED_RESPONSE_HEADERS
        }
        return Response(content=upstream.content, status_code=upstream.status_code, headers=headers)


def get_proxy(request: Request) -> ServiceProxy:
    return ServiceProxy(request.app.state.http_client, request.app.state.settings)


# =============================================================================
# Routes
# =============================================================================

@router.api_route("/buildings/{building_id}", methods=PROXY_METHODS, include_in_schema=False)
@router.api_route("/buildings/{building_id}/{rest:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_building(
    request: Request,
    principal: Principal = Depends(require_building_scope()),
    proxy: ServiceProxy = Depends(get_proxy),
):
    """Building-scoped routes."""
    return await proxy.forward(request, principal)


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_any(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    proxy: ServiceProxy = Depends(get_proxy),
):
    return await proxy.forward(request, principal)
