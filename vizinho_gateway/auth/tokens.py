"""
Vizinho Virtual Gateway - JWT Token Issuer

Issues and verifies the session token pair:

- Access token: the Principal's claims (sub, email, role, building/unit
  scope, permissions), 24h by default
- Refresh token: only sub and email, 7 days by default, signed with a
  separate secret

Security:
- Permissions are derived from the role policy at issuance, never from
  client input
- Expired and malformed tokens raise distinct errors
- Every token carries a random jti for audit correlation
- Signing is pure computation; revocation is the store's job
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, Field

from vizinho_gateway.auth.models import Principal, Role
from vizinho_gateway.config import Settings
from vizinho_gateway.gateway.rbac import RBACPolicy

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenError(Exception):
    """Base class for token verification failures."""
    pass


class InvalidTokenError(TokenError):
    """Signature, structure, issuer/audience or token type is wrong."""
    pass


class TokenExpiredError(TokenError):
    """Signature is fine but the token is past its expiry."""
    pass


class TokenPair(BaseModel):
    """Result of issue_tokens()."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Seconds until the access token expires")
    refresh_expires_in: int
    principal: Principal = Field(..., description="Claims embedded in the access token")


class RefreshClaims(BaseModel):
    """Verified contents of a refresh token."""
    subject_id: str
    email: str
    token_id: str
    expires_at: datetime


class TokenIssuer:
    """
    Signs and verifies access/refresh tokens (HS256 via python-jose).

    Usage:
        issuer = TokenIssuer(settings)
        pair = issuer.issue_tokens(subject_id=..., email=..., role=Role.RESIDENT)
        principal = issuer.verify_access(pair.access_token)
    """

    def __init__(self, settings: Settings, policy: Optional[RBACPolicy] = None):
        self._settings = settings
        self._policy = policy or RBACPolicy()
        self.access_ttl = timedelta(hours=settings.ACCESS_TOKEN_EXPIRE_HOURS)
        self.refresh_ttl = timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)

    def issue_tokens(
        self,
        subject_id: str,
        email: str,
        role: Role,
        building_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TokenPair:
        """
        Issue an access/refresh pair for a verified user.

        Args:
            subject_id: User ID
            email: User email
            role: User role; determines the embedded permissions
            building_id: Building scope (None for admins)
            unit_id: Unit scope
            now: Issuance time override (tests)

        Returns:
            TokenPair including the Principal the access token encodes
        """
        issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        role = Role(role)

        principal = Principal(
            subject_id=str(subject_id),
            email=email,
            role=role,
            building_id=str(building_id) if building_id is not None else None,
            unit_id=str(unit_id) if unit_id is not None else None,
            permissions=self._policy.permissions_for(role),
            issued_at=issued_at,
            expires_at=issued_at + self.access_ttl,
            token_id=secrets.token_hex(16),
        )

        access_claims = {
            "sub": principal.subject_id,
            "email": principal.email,
            "role": principal.role.value,
            "building_id": principal.building_id,
            "unit_id": principal.unit_id,
            "permissions": sorted(principal.permissions),
            "type": ACCESS_TOKEN_TYPE,
            "jti": principal.token_id,
            "iat": issued_at,
            "exp": principal.expires_at,
        }
        refresh_claims = {
            "sub": principal.subject_id,
            "email": principal.email,
            "type": REFRESH_TOKEN_TYPE,
            "jti": secrets.token_hex(16),
            "iat": issued_at,
            "exp": issued_at + self.refresh_ttl,
        }

        return TokenPair(
            access_token=self._encode(access_claims, self._settings.SECRET_KEY),
            refresh_token=self._encode(refresh_claims, self._settings.refresh_secret),
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
            principal=principal,
        )

    def verify_access(self, token: str) -> Principal:
        """
        Verify an access token and rebuild its Principal.

        Args:
            token: Raw JWT from the Authorization header

        Returns:
            Principal with the role, scope and permissions fixed at issuance

        Raises:
            TokenExpiredError: token is past its expiry
            InvalidTokenError: anything else wrong with the token

        Example:
            >>> pair = issuer.issue_tokens("u1", "ana@vizinho.test", Role.RESIDENT, building_id="b1")
            >>> issuer.verify_access(pair.access_token).building_id
            'b1'
        """
        claims = self._decode(token, self._settings.SECRET_KEY, ACCESS_TOKEN_TYPE)
        try:
            return Principal(
                subject_id=claims["sub"],
                email=claims["email"],
                role=Role(claims["role"]),
                building_id=claims.get("building_id"),
                unit_id=claims.get("unit_id"),
                permissions=frozenset(claims.get("permissions") or []),
                issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
                token_id=claims["jti"],
            )
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidTokenError(f"Malformed access token claims: {e}") from e

    def verify_refresh(self, token: str) -> RefreshClaims:
        """
        Verify a refresh token.

        Refresh tokens carry type "refresh" and are signed with
        REFRESH_SECRET_KEY when one is set, so access tokens are refused here.

        Args:
            token: Refresh token from a previous login or refresh

        Returns:
            RefreshClaims identifying the user and the token

        Raises:
            TokenExpiredError, InvalidTokenError: as for verify_access
        """
        claims = self._decode(token, self._settings.refresh_secret, REFRESH_TOKEN_TYPE)
        try:
            return RefreshClaims(
                subject_id=claims["sub"],
                email=claims["email"],
                token_id=claims["jti"],
                expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidTokenError(f"Malformed refresh token claims: {e}") from e

    def _encode(self, claims: dict, key: str) -> str:
        return jwt.encode(
            {**claims, "iss": self._settings.JWT_ISSUER, "aud": self._settings.JWT_AUDIENCE},
            key,
            algorithm=self._settings.JWT_ALGORITHM,
        )

    def _decode(self, token: str, key: str, expected_type: str) -> dict:
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[self._settings.JWT_ALGORITHM],
                audience=self._settings.JWT_AUDIENCE,
                issuer=self._settings.JWT_ISSUER,
            )
        except ExpiredSignatureError as e:
            raise TokenExpiredError("Token has expired") from e
        except JWTError as e:
            raise InvalidTokenError(f"Token validation failed: {e}") from e

        if claims.get("type") != expected_type:
            raise InvalidTokenError(f"Expected {expected_type} token")
        return claims
