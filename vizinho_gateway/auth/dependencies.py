"""
Vizinho Virtual Gateway - Security Dependencies

FastAPI dependencies for authentication and authorization.

Authentication state machine (per request):

    no token                         -> 401 MISSING_TOKEN
    token blacklisted                -> 401 TOKEN_BLACKLISTED
    token expired / invalid          -> 401 TOKEN_EXPIRED / INVALID_TOKEN
    user blacklisted                 -> 403 USER_BLACKLISTED
    user inactive                    -> 401 USER_INACTIVE
    otherwise                        -> Principal on request.state.principal

The blacklist is consulted before the signature, so an explicitly revoked
token is refused even while its signature is still valid.

Usage:
    @router.get("/me")
    async def me(principal: Principal = Depends(get_current_principal)):
        ...

    @router.get("/reports", dependencies=[Depends(require_permission("financial:read"))])
    async def reports():
        ...
"""

import json
import logging
from typing import Callable, Optional, Union

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from vizinho_gateway.auth.models import Principal, Role
from vizinho_gateway.auth.tokens import InvalidTokenError, TokenExpiredError, TokenIssuer
from vizinho_gateway.errors import AuthenticationError, AuthorizationError, GatewayError
from vizinho_gateway.gateway.rbac import (
    Permission,
    check_building_scope,
    check_permission,
    check_role,
)
from vizinho_gateway.store import BlacklistScope, SecurityStore, StoreError

logger = logging.getLogger(__name__)

# HTTP Bearer scheme for JWT extraction
bearer_scheme = HTTPBearer(auto_error=False)


def get_store(request: Request) -> SecurityStore:
    return request.app.state.store


def get_issuer(request: Request) -> TokenIssuer:
    return request.app.state.issuer


async def _is_blacklisted(store: SecurityStore, scope: BlacklistScope, value: str) -> bool:
    try:
        return await store.is_blacklisted(scope, value)
    except StoreError as e:
        # Fail open: a store outage must not lock every user out
        logger.error("Blacklist lookup failed (%s): %s", scope.value, e)
        return False


async def _is_active(store: SecurityStore, user_id: str) -> bool:
    try:
        return await store.is_user_active(user_id)
    except StoreError as e:
        logger.error("Active-user lookup failed for %s: %s", user_id, e)
        return True


async def authenticate(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials],
) -> Principal:
    """
    Run the authentication state machine for one request.

    Raises:
        AuthenticationError / AuthorizationError on rejection
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Access token required", code="MISSING_TOKEN")

    token = credentials.credentials
    store = get_store(request)

    if await _is_blacklisted(store, BlacklistScope.TOKEN, token):
        raise AuthenticationError("Token has been revoked", code="TOKEN_BLACKLISTED")

    try:
        principal = get_issuer(request).verify_access(token)
    except TokenExpiredError:
        raise AuthenticationError("Token has expired", code="TOKEN_EXPIRED")
    except InvalidTokenError:
        raise AuthenticationError("Invalid token", code="INVALID_TOKEN")

    if await _is_blacklisted(store, BlacklistScope.USER, principal.subject_id):
        raise AuthorizationError("User has been blocked", code="USER_BLACKLISTED")

    if not await _is_active(store, principal.subject_id):
        raise AuthenticationError("User is inactive", code="USER_INACTIVE")

    request.state.principal = principal
    request.state.access_token = token
    return principal


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    """Required authentication."""
    return await authenticate(request, credentials)


async def get_optional_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[Principal]:
    """Authentication for endpoints that also serve anonymous callers."""
    if credentials is None:
        return None
    try:
        return await authenticate(request, credentials)
    except GatewayError as e:
        logger.debug("Optional auth fell through to anonymous: %s", e.code)
        return None


# =============================================================================
# Authorization dependency factories
# =============================================================================

def require_role(*roles: Union[Role, str]) -> Callable:
    """
    Dependency requiring one of the given roles.

    Usage:
        @router.post("/blacklist", dependencies=[Depends(require_role(Role.ADMIN))])
    """
    async def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        error = check_role(principal, roles)
        if error is not None:
            raise error
        return principal

    return dependency


def require_permission(permission: Union[str, Permission]) -> Callable:
    """Dependency requiring a permission (wildcard grants count)."""
    permission = Permission.parse(permission)

    async def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        error = check_permission(principal, permission)
        if error is not None:
            raise error
        return principal

    return dependency


async def _requested_building_id(request: Request) -> Optional[str]:
    """Building id from the path, else from a JSON body."""
    building_id = request.path_params.get("building_id")
    if building_id is not None:
        return str(building_id)

    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = json.loads(await request.body() or b"null")
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("building_id") is not None:
        return str(body["building_id"])
    return None


def require_building_scope() -> Callable:
    """Dependency restricting non-admins to their own building."""
    async def dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        error = check_building_scope(principal, await _requested_building_id(request))
        if error is not None:
            raise error
        return principal

    return dependency
