"""
Vizinho Virtual Gateway - RBAC Tests

Unit tests for role-based access control.
Tests permission matching, policy loading, the authorization predicates
and the FastAPI dependency factories.

Run with: pytest tests/test_rbac.py
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Depends

from vizinho_gateway.auth.dependencies import require_building_scope, require_permission, require_role
from vizinho_gateway.auth.models import Principal, Role
from vizinho_gateway.errors import AuthenticationError, AuthorizationError
from vizinho_gateway.gateway.rbac import (
    Permission,
    RBACPolicy,
    check_building_scope,
    check_permission,
    check_role,
    permission_matches,
)
from tests.conftest import auth_headers, login_user


def make_principal(role: Role, building_id=None, permissions=None) -> Principal:
    now = datetime.now(timezone.utc)
    return Principal(
        subject_id="user-1",
        email="someone@vizinho.test",
        role=role,
        building_id=building_id,
        permissions=frozenset(permissions if permissions is not None else RBACPolicy().permissions_for(role)),
        issued_at=now,
        expires_at=now + timedelta(hours=1),
        token_id="jti-1",
    )


# =============================================================================
# PERMISSION MATCHING
# =============================================================================

class TestPermissionMatching:

    def test_exact_grant(self):
        assert permission_matches({"financial:read"}, "financial:read")
        assert not permission_matches({"financial:read"}, "financial:write")

    def test_wildcard_grants_everything_beneath(self):
        assert permission_matches({"financial:*"}, "financial:read")
        assert permission_matches({"financial:*"}, "financial:read:own")
        assert not permission_matches({"financial:*"}, "assembly:vote")

    def test_nested_wildcard(self):
        assert permission_matches({"user:read:*"}, "user:read:own")
        assert not permission_matches({"user:read:*"}, "user:update")

    def test_superuser_grant(self):
        assert permission_matches({"admin:*"}, "anything:at:all")

    def test_specific_grant_does_not_imply_broader(self):
        assert not permission_matches({"user:read:own"}, "user:read")

    def test_ancestors_most_specific_first(self):
        ancestors = [str(p) for p in Permission.parse("user:read:own").ancestors()]

        assert ancestors == ["user:read:own:*", "user:read:*", "user:*"]

    def test_malformed_permission_rejected(self):
        with pytest.raises(ValueError):
            Permission.parse("financial::read")

    def test_malformed_grants_ignored(self):
        assert permission_matches({"bad::grant", "financial:read"}, "financial:read")


# =============================================================================
# POLICY
# =============================================================================

class TestRBACPolicy:
    """Tests for the role grants in policies.yaml."""

    def test_policy_is_singleton(self):
        assert RBACPolicy() is RBACPolicy()

    def test_admin_has_all_permissions(self):
        policy = RBACPolicy()

        assert policy.has_permission("admin", "security:blacklist:write")
        assert policy.has_permission(Role.ADMIN, "financial:read")

    def test_manager_manages_building(self):
        policy = RBACPolicy()

        assert policy.has_permission(Role.MANAGER, "financial:approve")
        assert policy.has_permission(Role.MANAGER, "assembly:create")
        assert not policy.has_permission(Role.MANAGER, "security:write")

    def test_resident_limited_permissions(self):
        policy = RBACPolicy()

        assert policy.has_permission(Role.RESIDENT, "assembly:vote")
        assert policy.has_permission(Role.RESIDENT, "financial:read:own")
        assert not policy.has_permission(Role.RESIDENT, "financial:read")
        assert not policy.has_permission(Role.RESIDENT, "building:update")

    def test_professional_limited_permissions(self):
        policy = RBACPolicy()

        assert policy.has_permission(Role.PROFESSIONAL, "professional:profile:update")
        assert not policy.has_permission(Role.PROFESSIONAL, "assembly:vote")

    def test_unknown_role_denied(self):
        policy = RBACPolicy()

        assert policy.permissions_for("janitor") == frozenset()
        assert not policy.has_permission("janitor", "building:read")


# =============================================================================
# PREDICATES
# =============================================================================

class TestPredicates:

    def test_check_role(self):
        manager = make_principal(Role.MANAGER, "b1")

        assert check_role(manager, [Role.MANAGER, Role.ADMIN]) is None

        error = check_role(manager, [Role.ADMIN])
        assert isinstance(error, AuthorizationError)
        assert error.code == "INSUFFICIENT_PERMISSIONS"

    def test_missing_principal_is_unauthenticated(self):
        for error in (
            check_role(None, [Role.ADMIN]),
            check_permission(None, "building:read"),
            check_building_scope(None, "b1"),
        ):
            assert isinstance(error, AuthenticationError)
            assert error.status_code == 401

    def test_check_permission_uses_token_grants(self):
        principal = make_principal(Role.RESIDENT, "b1", permissions={"assembly:vote"})

        assert check_permission(principal, "assembly:vote") is None
        assert check_permission(principal, "assembly:read").code == "MISSING_PERMISSION"

    def test_building_scope_same_building(self):
        assert check_building_scope(make_principal(Role.RESIDENT, "b1"), "b1") is None

    def test_building_scope_other_building(self):
        error = check_building_scope(make_principal(Role.MANAGER, "b1"), "b2")

        assert error.status_code == 403
        assert error.code == "BUILDING_ACCESS_DENIED"

    def test_building_scope_missing_ids_denied(self):
        assert check_building_scope(make_principal(Role.RESIDENT, None), "b1") is not None
        assert check_building_scope(make_principal(Role.RESIDENT, "b1"), None) is not None

    def test_admin_bypasses_building_scope(self):
        admin = make_principal(Role.ADMIN)

        assert check_building_scope(admin, "b2") is None
        assert check_building_scope(admin, None) is None


# =============================================================================
# DEPENDENCIES
# =============================================================================

@pytest.fixture
def scoped_routes(app):
    """Routes outside /api guarded by each dependency factory."""

    @app.get("/testing/managers")
    async def managers_only(principal: Principal = Depends(require_role(Role.MANAGER, Role.ADMIN))):
        return {"subject": principal.subject_id}

    @app.get("/testing/votes")
    async def voters_only(principal: Principal = Depends(require_permission("assembly:vote"))):
        return {"ok": True}

    @app.get("/testing/buildings/{building_id}")
    async def building_path(building_id: str, principal: Principal = Depends(require_building_scope())):
        return {"building_id": building_id}

    @app.post("/testing/notices")
    async def building_body(principal: Principal = Depends(require_building_scope())):
        return {"ok": True}

    return app


class TestDependencies:

    def test_require_role(self, scoped_routes, client, resident_user, manager_user):
        resident = login_user(client, "resident@vizinho.test", "ResidentPass123")
        manager = login_user(client, "manager@vizinho.test", "ManagerPass123")

        denied = client.get("/testing/managers", headers=auth_headers(resident["access_token"]))
        allowed = client.get("/testing/managers", headers=auth_headers(manager["access_token"]))

        assert denied.status_code == 403
        assert denied.json()["code"] == "INSUFFICIENT_PERMISSIONS"
        assert allowed.status_code == 200

    def test_require_role_without_token(self, scoped_routes, client):
        response = client.get("/testing/managers")

        assert response.status_code == 401
        assert response.json()["code"] == "MISSING_TOKEN"

    def test_require_permission(self, scoped_routes, client, resident_user, manager_user):
        resident = login_user(client, "resident@vizinho.test", "ResidentPass123")
        manager = login_user(client, "manager@vizinho.test", "ManagerPass123")

        assert client.get("/testing/votes", headers=auth_headers(resident["access_token"])).status_code == 200
        # assembly:* covers assembly:vote
        assert client.get("/testing/votes", headers=auth_headers(manager["access_token"])).status_code == 200

    def test_building_scope_from_path(self, scoped_routes, client, resident_headers):
        own = client.get("/testing/buildings/b1", headers=resident_headers)
        other = client.get("/testing/buildings/b2", headers=resident_headers)

        assert own.status_code == 200
        assert other.status_code == 403
        assert other.json()["code"] == "BUILDING_ACCESS_DENIED"

    def test_building_scope_from_body(self, scoped_routes, client, resident_headers):
        own = client.post("/testing/notices", json={"building_id": "b1", "title": "Pool closed"}, headers=resident_headers)
        other = client.post("/testing/notices", json={"building_id": "b2", "title": "Pool closed"}, headers=resident_headers)

        assert own.status_code == 200
        assert other.status_code == 403

    def test_admin_reaches_any_building(self, scoped_routes, client, admin_headers):
        assert client.get("/testing/buildings/b2", headers=admin_headers).status_code == 200
