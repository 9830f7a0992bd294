"""
Vizinho Virtual Gateway - Role-Based Access Control (RBAC)

Permissions are structured values (colon-separated segments) with explicit
wildcard matching. Role grants are defined in policies.yaml.

Security:
- Deny-by-default: all actions require an explicit grant
- Roles do not inherit from each other
- The predicates here are pure; callers decide how to reject
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, Optional, Tuple, Union

import yaml

from vizinho_gateway.auth.models import Principal, Role
from vizinho_gateway.errors import AuthenticationError, AuthorizationError, GatewayError

logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class Permission:
    """
    A capability such as ``financial:read`` or ``user:read:own``.

    A trailing ``*`` segment grants every permission beneath that prefix.
    """
    segments: Tuple[str, ...]

    @classmethod
    def parse(cls, value: Union[str, "Permission"]) -> "Permission":
        if isinstance(value, Permission):
            return value
        segments = tuple(part.strip() for part in str(value).split(":"))
        if any(not part for part in segments):
            raise ValueError(f"Malformed permission: {value!r}")
        return cls(segments)

    @property
    def resource(self) -> str:
        return self.segments[0]

    @property
    def is_wildcard(self) -> bool:
        return self.segments[-1] == WILDCARD

    def ancestors(self) -> Iterator["Permission"]:
        """
        Wildcards that would grant this permission, most specific first.

        ``user:read:own`` yields ``user:read:own:*``, ``user:read:*``, ``user:*``.
        """
        for i in range(len(self.segments), 0, -1):
            yield Permission(self.segments[:i] + (WILDCARD,))

    def __str__(self) -> str:
        return ":".join(self.segments)


SUPERUSER = Permission(("admin", WILDCARD))


def permission_matches(
    granted: Iterable[Union[str, Permission]],
    required: Union[str, Permission],
) -> bool:
    """
    Check a required permission against a set of grants.

    Order: exact grant, then wildcard ancestors from most to least specific,
    then the ``admin:*`` superuser grant.
    """
    required = Permission.parse(required)
    grants = set()
    for item in granted:
        try:
            grants.add(Permission.parse(item))
        except ValueError:
            logger.warning("Ignoring malformed permission grant: %r", item)

    if required in grants:
        return True
    if any(ancestor in grants for ancestor in required.ancestors()):
        return True
    return SUPERUSER in grants


class RBACPolicy:
    """
    Manages role-to-permission mappings loaded from policies.yaml.

    Singleton: the policy file is read once per process.
    """

    _instance: Optional["RBACPolicy"] = None
    _policies: Dict[Role, FrozenSet[str]] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_policies()
        return cls._instance

    def _load_policies(self):
        """Load policies from YAML configuration file."""
        policy_path = Path(__file__).parent / "policies.yaml"

        if not policy_path.exists():
            logger.warning("No RBAC policy file at %s; denying everything", policy_path)
            self._policies = {}
            return

        with open(policy_path, "r") as f:
            config = yaml.safe_load(f) or {}

        policies = {}
        for role_name, perms in (config.get("roles") or {}).items():
            role = Role(role_name)
            for perm in perms:
                Permission.parse(perm)
            policies[role] = frozenset(perms)
        self._policies = policies

    def permissions_for(self, role: Union[Role, str]) -> FrozenSet[str]:
        """All permissions granted to a role (empty for unknown roles)."""
        try:
            return self._policies.get(Role(role), frozenset())
        except ValueError:
            return frozenset()

    def has_permission(self, role: Union[Role, str], permission: Union[str, Permission]) -> bool:
        """True if the role's grants satisfy the permission."""
        return permission_matches(self.permissions_for(role), permission)


# =============================================================================
# Authorization predicates
# =============================================================================

def _not_authenticated() -> AuthenticationError:
    return AuthenticationError("User not authenticated", code="NOT_AUTHENTICATED")


def check_role(
    principal: Optional[Principal],
    allowed_roles: Iterable[Union[Role, str]],
) -> Optional[GatewayError]:
    """Principal's role must be one of allowed_roles."""
    if principal is None:
        return _not_authenticated()

    allowed = {Role(role) for role in allowed_roles}
    if principal.role not in allowed:
        return AuthorizationError(
            "Insufficient permissions",
            code="INSUFFICIENT_PERMISSIONS",
            details=[{
                "field": "role",
                "message": f"Requires one of: {sorted(r.value for r in allowed)}",
                "value": principal.role.value,
            }],
        )
    return None


def check_permission(
    principal: Optional[Principal],
    permission: Union[str, Permission],
) -> Optional[GatewayError]:
    """Principal's permissions must grant `permission` (wildcards allowed)."""
    if principal is None:
        return _not_authenticated()

    if not permission_matches(principal.permissions, permission):
        return AuthorizationError(
            f"Permission required: {permission}",
            code="MISSING_PERMISSION",
            details=[{"field": "permissions", "message": "Missing permission", "value": str(permission)}],
        )
    return None


def check_building_scope(
    principal: Optional[Principal],
    building_id: Optional[str],
) -> Optional[GatewayError]:
    """
    Non-admin principals may only reach their own building.

    Admins bypass the check entirely.
    """
    if principal is None:
        return _not_authenticated()

    if principal.is_admin:
        return None

    if building_id is None or principal.building_id is None or principal.building_id != str(building_id):
        logger.warning(
            "Building access denied: user=%s own=%s requested=%s",
            principal.subject_id, principal.building_id, building_id,
        )
        return AuthorizationError("Access to this building is not allowed", code="BUILDING_ACCESS_DENIED")
    return None
