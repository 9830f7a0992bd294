"""
Vizinho Virtual Gateway - Admin API Routes

Admin-only endpoints for security operations:
- Blacklist management (IP, token, user)
- Account deactivation

All routes require ADMIN role.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlmodel import select

from vizinho_gateway.auth.dependencies import get_store, require_role
from vizinho_gateway.auth.models import Principal, Role, User, utcnow
from vizinho_gateway.auth.schemas import MessageResponse
from vizinho_gateway.errors import NotFoundError
from vizinho_gateway.store import BlacklistScope, SecurityStore
from vizinho_gateway.store import counters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

require_admin = require_role(Role.ADMIN)

DEFAULT_BLACKLIST_SECONDS = 24 * 60 * 60


# =============================================================================
# Request/Response Models
# =============================================================================

class BlacklistRequest(BaseModel):
    """Request to blacklist an IP, token or user."""
    scope: BlacklistScope
    value: str = Field(..., min_length=1, max_length=4096)
    reason: str = Field("manual", max_length=255)
    ttl_seconds: int = Field(DEFAULT_BLACKLIST_SECONDS, ge=1, le=365 * 24 * 60 * 60)


class BlacklistStatus(BaseModel):
    """Blacklist lookup result."""
    scope: BlacklistScope
    value: str
    blacklisted: bool
    reason: Optional[str] = None


# =============================================================================
# Blacklist Endpoints
# =============================================================================

@router.post(
    "/blacklist",
    response_model=BlacklistStatus,
    status_code=status.HTTP_201_CREATED,
    summary="Blacklist an IP, token or user",
)
async def add_blacklist_entry(
    body: BlacklistRequest,
    store: SecurityStore = Depends(get_store),
    admin: Principal = Depends(require_admin),
):
    await store.add_to_blacklist(body.scope, body.value, body.reason, body.ttl_seconds)
    logger.warning(
        "Admin %s blacklisted %s for %ss: %s",
        admin.subject_id, body.scope.value, body.ttl_seconds, body.reason,
    )
    if body.scope is BlacklistScope.IP:
        await counters.record_metric(store, counters.BLOCKED_IPS)
    return BlacklistStatus(scope=body.scope, value=body.value, blacklisted=True, reason=body.reason)


@router.get("/blacklist/{scope}/{value}", response_model=BlacklistStatus, summary="Check a blacklist entry")
async def get_blacklist_entry(
    scope: BlacklistScope,
    value: str,
    store: SecurityStore = Depends(get_store),
    admin: Principal = Depends(require_admin),
):
    reason = await store.get_blacklist_reason(scope, value)
    return BlacklistStatus(scope=scope, value=value, blacklisted=reason is not None, reason=reason)


@router.delete("/blacklist/{scope}/{value}", response_model=MessageResponse, summary="Remove a blacklist entry")
async def remove_blacklist_entry(
    scope: BlacklistScope,
    value: str,
    store: SecurityStore = Depends(get_store),
    admin: Principal = Depends(require_admin),
):
    if not await store.remove_from_blacklist(scope, value):
        raise NotFoundError("Blacklist entry not found", code="BLACKLIST_ENTRY_NOT_FOUND")
    logger.warning("Admin %s removed %s blacklist entry", admin.subject_id, scope.value)
    return MessageResponse(message="Blacklist entry removed")


# =============================================================================
# User Management Endpoints
# =============================================================================

@router.post("/users/{user_id}/deactivate", response_model=MessageResponse, summary="Deactivate a user")
async def deactivate_user(
    user_id: UUID,
    request: Request,
    store: SecurityStore = Depends(get_store),
    admin: Principal = Depends(require_admin),
):
    """
    Disable an account.

    Outstanding access tokens stop working immediately because the
    active-user marker is cleared; the stored refresh token is dropped too.
    """
    db = request.app.state.db_session_factory()

    try:
        user = db.exec(select(User).where(User.id == user_id)).first()
        if not user:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")

        user.is_active = False
        user.updated_at = utcnow()
        db.add(user)
        db.commit()
    finally:
        db.close()

    await store.clear_user_active(str(user_id))
    await store.delete_refresh_token(str(user_id))

    logger.warning("Admin %s deactivated user %s", admin.subject_id, user_id)
    return MessageResponse(message="User deactivated")
