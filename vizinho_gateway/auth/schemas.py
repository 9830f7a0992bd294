"""
Vizinho Virtual Gateway - Authentication Request/Response Schemas

Pydantic models for API request validation and response serialization.
Separates API contracts from database models.
"""

import re
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, validator

from vizinho_gateway.auth.models import Role

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")


def _normalize_email(value: str) -> str:
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Invalid email format")
    return value.lower()


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login."""
    email: str = Field(..., description="User email address")
    password: str = Field(..., min_length=1, description="User password")
    two_factor_code: Optional[str] = Field(None, max_length=10, description="TOTP code, once 2FA is enabled")

    @validator("email")
    def email_format(cls, v):
        return _normalize_email(v)


class RegisterRequest(BaseModel):
    """Request body for POST /api/auth/register."""
    email: str
    password: str = Field(..., min_length=8)
    name: str = Field(..., min_length=2, max_length=255)
    role: Role = Role.RESIDENT
    building_id: Optional[str] = Field(None, max_length=64)
    unit_id: Optional[str] = Field(None, max_length=64)

    @validator("email")
    def email_format(cls, v):
        return _normalize_email(v)

    @validator("password")
    def password_strength(cls, v):
        """At least one letter and one digit."""
        if not re.search(r"[A-Za-z]", v) or not re.search(r"\d", v):
            raise ValueError("Password must contain letters and digits")
        return v


class RefreshRequest(BaseModel):
    """Request body for POST /api/auth/refresh."""
    refresh_token: str = Field(..., description="Refresh token from login")


class UserResponse(BaseModel):
    """Public view of a user account."""
    id: UUID
    email: str
    name: str
    role: Role
    building_id: Optional[str] = None
    unit_id: Optional[str] = None
    is_active: bool
    two_factor_enabled: bool = False
    created_at: datetime
    permissions: List[str] = Field(default_factory=list)

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    """Response body for login and refresh."""
    access_token: str = Field(..., description="JWT access token")
    refresh_token: str = Field(..., description="JWT refresh token")
    token_type: str = Field(default="bearer")
    expires_in: int = Field(..., description="Seconds until the access token expires")


class LoginResponse(TokenResponse):
    """Response body for successful login."""
    user: UserResponse


class TwoFactorRequiredResponse(BaseModel):
    """Login answer when the password was right but a TOTP code is still needed."""
    requires_two_factor: bool = True
    message: str = "Two-factor authentication code required"


class TwoFactorSetupResponse(BaseModel):
    """Secret for the authenticator app; 2FA is off until a code is verified."""
    secret: str
    otpauth_url: str = Field(..., description="otpauth:// URI for QR codes")


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., min_length=1)
    code: str = Field(..., min_length=6, max_length=10)


class SessionResponse(BaseModel):
    """Who the caller is, for endpoints open to anonymous callers too."""
    authenticated: bool
    subject_id: Optional[str] = None
    email: Optional[str] = None
    role: Optional[Role] = None
    building_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    message: str
