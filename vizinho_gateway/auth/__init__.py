"""
Vizinho Virtual Gateway - Authentication Package

- JWT access/refresh token pairs bound to a role and building
- bcrypt password hashing with work-factor upgrades
- Token, user and IP blacklists checked on every request
"""

from vizinho_gateway.auth.models import Principal, Role, User

__all__ = [
    "Principal",
    "Role",
    "User",
]
