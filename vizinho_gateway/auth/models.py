"""
Vizinho Virtual Gateway - Authentication Models

- Role: closed set of condominium roles
- Principal: identity materialized from a verified access token
- User: SQLModel account record used for login

Security:
- Passwords stored as bcrypt hashes only
- Principals are immutable once issued
- All timestamps in UTC
"""

from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, String
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """
    User roles for RBAC.

    MANAGER is the building's syndic; ADMIN is platform staff and the only
    role that crosses building boundaries.
    """
    MANAGER = "manager"
    RESIDENT = "resident"
    PROFESSIONAL = "professional"
    ADMIN = "admin"


class Principal(BaseModel):
    """
    Authenticated identity attached to a request.

    Built only from a verified access token; permissions were derived from
    the role at issuance and are never taken from client input.
    """
    subject_id: str = PydanticField(..., description="User ID (sub claim)")
    email: str
    role: Role
    building_id: Optional[str] = None
    unit_id: Optional[str] = None
    permissions: FrozenSet[str] = frozenset()
    issued_at: datetime
    expires_at: datetime
    token_id: str = PydanticField(..., description="jti for audit correlation")

    class Config:
        frozen = True

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class User(SQLModel, table=True):
    """
    User account for authentication.

    Attributes:
        id: Unique identifier (UUIDv4)
        email: Login identifier (unique, indexed)
        password_hash: bcrypt hash (never store plaintext)
        role: RBAC role determining permissions
        building_id: Building the user belongs to (None for admins)
        unit_id: Apartment/unit within the building
        is_active: Soft-delete flag; inactive users cannot login
        two_factor_enabled: Login requires a TOTP code as well as the password
        two_factor_secret: Base32 TOTP secret, set once 2FA is confirmed
    """
    __tablename__ = "users"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False)
    )
    password_hash: str = Field(sa_column=Column(String(255), nullable=False))
    name: str = Field(default="", sa_column=Column(String(255), nullable=False, default=""))
    role: Role = Field(
        sa_column=Column(SQLEnum(Role), nullable=False, default=Role.RESIDENT)
    )
    building_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    unit_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, default=utcnow),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow),
    )
    last_login_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    two_factor_enabled: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    two_factor_secret: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
