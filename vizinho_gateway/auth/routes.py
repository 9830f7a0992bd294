"""
Vizinho Virtual Gateway - Authentication Routes

API endpoints for authentication:
- POST /auth/register  - Create a resident/manager/professional account
- POST /auth/login     - Authenticate and issue a token pair
- POST /auth/refresh   - Rotate the token pair
- POST /auth/logout    - Revoke the current access token
- GET  /auth/me        - Get current user info
- GET  /auth/session   - Who the caller is; anonymous callers allowed
- POST /auth/2fa/setup  - Start TOTP enrolment
- POST /auth/2fa/verify - Confirm enrolment with a first code
- POST /auth/2fa/disable - Turn TOTP off (password and code required)

Failed logins are counted per client IP; once the limit is reached the
next attempt inside the window is refused with 429 without checking the
password.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from sqlmodel import Session as DBSession, select

from vizinho_gateway.auth import two_factor
from vizinho_gateway.auth.dependencies import (
    get_current_principal,
    get_issuer,
    get_optional_principal,
    get_store,
)
from vizinho_gateway.auth.models import Principal, Role, User, utcnow
from vizinho_gateway.auth.password import hash_password, needs_rehash, verify_password
from vizinho_gateway.auth.schemas import (
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorRequiredResponse,
    TwoFactorSetupResponse,
    UserResponse,
)
from vizinho_gateway.auth.tokens import TokenError, TokenIssuer, TokenPair
from vizinho_gateway.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from vizinho_gateway.gateway.rbac import RBACPolicy
from vizinho_gateway.gateway.security import client_ip_from_scope
from vizinho_gateway.store import BlacklistScope, SecurityStore, StoreError
from vizinho_gateway.store import counters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


def get_db(request: Request) -> DBSession:
    """Get database session from app state."""
    return request.app.state.db_session_factory()


def get_client_ip(request: Request) -> str:
    """Client IP as resolved by the security middleware."""
    client_ip = getattr(request.state, "client_ip", None)
    if client_ip:
        return client_ip
    return client_ip_from_scope(request.scope, request.app.state.settings.TRUST_FORWARDED_HEADERS)


def login_failure_key(ip: str) -> str:
    return f"login_failures:{ip}"


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        building_id=user.building_id,
        unit_id=user.unit_id,
        is_active=user.is_active,
        two_factor_enabled=user.two_factor_enabled,
        created_at=user.created_at,
        permissions=sorted(RBACPolicy().permissions_for(user.role)),
    )


def _load_user(db: DBSession, principal: Principal) -> User:
    user: Optional[User] = None
    try:
        user_id = UUID(principal.subject_id)
    except ValueError:
        user_id = None
    if user_id is not None:
        user = db.exec(select(User).where(User.id == user_id)).first()

    if not user:
        raise NotFoundError("User not found", code="USER_NOT_FOUND")
    return user


async def _start_session(store: SecurityStore, issuer: TokenIssuer, user: User) -> TokenPair:
    """Issue a pair and register it in the store."""
    pair = issuer.issue_tokens(
        subject_id=str(user.id),
        email=user.email,
        role=user.role,
        building_id=user.building_id,
        unit_id=user.unit_id,
    )
    await store.store_refresh_token(str(user.id), pair.refresh_token, pair.refresh_expires_in)
    await store.mark_user_active(str(user.id), pair.refresh_expires_in)
    return pair


# =============================================================================
# Login throttling
# =============================================================================

async def _check_login_throttle(store: SecurityStore, ip: str, max_failures: int) -> None:
    try:
        failures, ttl = await store.peek_counter(login_failure_key(ip))
    except StoreError as e:
        logger.error("Login throttle lookup failed for %s: %s", ip, e)
        return
    if failures >= max_failures:
        logger.warning("Login throttled for %s after %d failures", ip, failures)
        await counters.record_metric(store, counters.LOGIN_LOCKOUTS)
        raise RateLimitError(
            "Too many failed login attempts, try again later",
            code="TOO_MANY_LOGIN_ATTEMPTS",
            retry_after=ttl,
        )


async def _record_login_failure(store: SecurityStore, ip: str, window_seconds: int) -> None:
    try:
        await store.increment_rate_counter(login_failure_key(ip), window_seconds)
    except StoreError as e:
        logger.error("Could not record login failure for %s: %s", ip, e)
    await counters.record_metric(store, counters.FAILED_LOGINS)


# =============================================================================
# Routes
# =============================================================================

@router.post(
    "/register",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new account",
)
async def register(request: Request, body: RegisterRequest):
    """
    Create a resident, manager or professional account.

    Admin accounts are provisioned out of band and cannot self-register.
    """
    if body.role == Role.ADMIN:
        raise AuthorizationError("Admin accounts cannot be self-registered", code="ROLE_NOT_ALLOWED")

    settings = request.app.state.settings
    db = get_db(request)

    try:
        existing = db.exec(select(User).where(User.email == body.email)).first()
        if existing:
            raise ConflictError("Email already registered", code="EMAIL_ALREADY_EXISTS")

        now = utcnow()
        user = User(
            email=body.email,
            password_hash=hash_password(body.password, settings.BCRYPT_WORK_FACTOR),
            name=body.name,
            role=body.role,
            building_id=body.building_id,
            unit_id=body.unit_id,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info("Registered user %s with role %s", user.id, user.role.value)
        return _user_response(user)

    finally:
        db.close()


@router.post(
    "/login",
    response_model=Union[LoginResponse, TwoFactorRequiredResponse],
    summary="Authenticate and issue tokens",
)
async def login(
    request: Request,
    credentials: LoginRequest,
    store: SecurityStore = Depends(get_store),
    issuer: TokenIssuer = Depends(get_issuer),
):
    """
    Authenticate user with email and password.

    Users with 2FA enabled also send `two_factor_code`; without it the
    answer is `requires_two_factor` and no tokens are issued.

    On success:
    1. Upgrades the bcrypt hash if the work factor was raised
    2. Issues an access/refresh pair
    3. Stores the refresh token and marks the user active
    4. Records the login time

    Raises:
        401: INVALID_CREDENTIALS, ACCOUNT_DISABLED or INVALID_2FA_CODE
        429: too many failed attempts from this IP
    """
    settings = request.app.state.settings
    ip = get_client_ip(request)
    await _check_login_throttle(store, ip, settings.LOGIN_MAX_FAILURES)

    db = get_db(request)

    try:
        user = db.exec(select(User).where(User.email == credentials.email)).first()

        # Same answer for unknown email and wrong password
        if not user or not verify_password(credentials.password, user.password_hash):
            await _record_login_failure(store, ip, settings.LOGIN_FAILURE_WINDOW_SECONDS)
            logger.warning("Failed login for %s from %s", credentials.email, ip)
            raise AuthenticationError("Invalid email or password", code="INVALID_CREDENTIALS")

        if not user.is_active:
            logger.warning("Login attempt on disabled account %s", user.id)
            raise AuthenticationError("Account is disabled", code="ACCOUNT_DISABLED")

        if user.two_factor_enabled:
            if not credentials.two_factor_code:
                return TwoFactorRequiredResponse()
            if not two_factor.verify_code(
                user.two_factor_secret, credentials.two_factor_code, settings.TWO_FACTOR_VALID_WINDOW
            ):
                await _record_login_failure(store, ip, settings.LOGIN_FAILURE_WINDOW_SECONDS)
                await counters.record_metric(store, counters.INVALID_TWO_FACTOR_CODES)
                logger.warning("Invalid 2FA code for user %s from %s", user.id, ip)
                raise AuthenticationError("Invalid two-factor code", code="INVALID_2FA_CODE")

        if needs_rehash(user.password_hash, settings.BCRYPT_WORK_FACTOR):
            user.password_hash = hash_password(credentials.password, settings.BCRYPT_WORK_FACTOR)

        pair = await _start_session(store, issuer, user)

        user.last_login_at = utcnow()
        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info("User %s logged in from %s", user.id, ip, extra={"user_id": str(user.id)})
        await counters.record_metric(store, counters.LOGINS)

        return LoginResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            user=_user_response(user),
        )

    finally:
        db.close()


@router.post(
    "/refresh",
    response_model=TokenResponse,
    summary="Rotate the token pair",
)
async def refresh(
    request: Request,
    body: RefreshRequest,
    store: SecurityStore = Depends(get_store),
    issuer: TokenIssuer = Depends(get_issuer),
):
    """
    Exchange a refresh token for a new pair.

    Only the most recently issued refresh token is accepted; using it
    replaces it.
    """
    try:
        claims = issuer.verify_refresh(body.refresh_token)
    except TokenError:
        raise AuthenticationError("Invalid refresh token", code="INVALID_REFRESH_TOKEN")

    stored = await store.get_refresh_token(claims.subject_id)
    if stored is None or stored != body.refresh_token:
        logger.warning("Refresh token mismatch for user %s", claims.subject_id)
        raise AuthenticationError("Invalid refresh token", code="INVALID_REFRESH_TOKEN")

    if await store.is_blacklisted(BlacklistScope.USER, claims.subject_id):
        raise AuthorizationError("User has been blocked", code="USER_BLACKLISTED")

    db = get_db(request)

    try:
        user = db.exec(select(User).where(User.id == UUID(claims.subject_id))).first()
        if not user or not user.is_active:
            await store.delete_refresh_token(claims.subject_id)
            raise AuthenticationError("Account is disabled", code="ACCOUNT_DISABLED")

        pair = await _start_session(store, issuer, user)
        return TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )

    finally:
        db.close()


@router.post(
    "/logout",
    response_model=MessageResponse,
    summary="Revoke the current access token",
)
async def logout(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    store: SecurityStore = Depends(get_store),
):
    """
    Blacklist the presented access token until it would have expired and
    drop the stored refresh token.
    """
    remaining = (principal.expires_at - datetime.now(timezone.utc)).total_seconds()
    await store.add_to_blacklist(
        BlacklistScope.TOKEN,
        request.state.access_token,
        "logout",
        max(int(remaining), 1),
    )
    await store.delete_refresh_token(principal.subject_id)

    logger.info("User %s logged out", principal.subject_id)
    return MessageResponse(message="Logged out")


@router.get(
    "/me",
    response_model=UserResponse,
    summary="Get current user information",
)
async def get_me(
    request: Request,
    principal: Principal = Depends(get_current_principal),
):
    """Current user's profile, with the permissions their role grants."""
    db = get_db(request)

    try:
        return _user_response(_load_user(db, principal))

    finally:
        db.close()


@router.get(
    "/session",
    response_model=SessionResponse,
    summary="Describe the caller's session",
)
async def session_status(principal: Optional[Principal] = Depends(get_optional_principal)):
    """
    Anonymous callers get `authenticated: false` instead of a 401, as do
    callers whose token is invalid, expired or revoked.
    """
    if principal is None:
        return SessionResponse(authenticated=False)
    return SessionResponse(
        authenticated=True,
        subject_id=principal.subject_id,
        email=principal.email,
        role=principal.role,
        building_id=principal.building_id,
        expires_at=principal.expires_at,
    )


# =============================================================================
# Two-factor authentication
# =============================================================================

@router.post(
    "/2fa/setup",
    response_model=TwoFactorSetupResponse,
    summary="Start TOTP enrolment",
)
async def setup_two_factor(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    store: SecurityStore = Depends(get_store),
):
    """
    Generate a secret for the user's authenticator app.

    The secret is held in the store as pending; 2FA stays off until
    /2fa/verify confirms a code generated from it.
    """
    settings = request.app.state.settings
    db = get_db(request)

    try:
        user = _load_user(db, principal)
        if user.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled", code="TWO_FACTOR_ALREADY_ENABLED")

        secret = two_factor.new_secret()
        await store.set(two_factor.setup_key(str(user.id)), secret, ttl=settings.TWO_FACTOR_SETUP_TTL_SECONDS)

        logger.info("2FA setup started for user %s", user.id)
        return TwoFactorSetupResponse(
            secret=secret,
            otpauth_url=two_factor.provisioning_uri(secret, user.email, settings.TWO_FACTOR_ISSUER),
        )

    finally:
        db.close()


@router.post(
    "/2fa/verify",
    response_model=MessageResponse,
    summary="Confirm TOTP enrolment",
)
async def verify_two_factor(
    request: Request,
    body: TwoFactorCodeRequest,
    principal: Principal = Depends(get_current_principal),
    store: SecurityStore = Depends(get_store),
):
    """
    Enable 2FA once the user proves their app produces valid codes.

    Raises:
        400: NO_2FA_SETUP (no pending secret) or INVALID_2FA_CODE
    """
    settings = request.app.state.settings
    key = two_factor.setup_key(principal.subject_id)
    secret = await store.get(key)
    if secret is None:
        raise ValidationError("No two-factor setup in progress", code="NO_2FA_SETUP")

    if not two_factor.verify_code(secret, body.code, settings.TWO_FACTOR_VALID_WINDOW):
        await counters.record_metric(store, counters.INVALID_TWO_FACTOR_CODES)
        raise ValidationError("Invalid two-factor code", code="INVALID_2FA_CODE")

    db = get_db(request)

    try:
        user = _load_user(db, principal)
        user.two_factor_secret = secret
        user.two_factor_enabled = True
        db.add(user)
        db.commit()
    finally:
        db.close()

    await store.delete(key)
    logger.info("2FA enabled for user %s", principal.subject_id)
    return MessageResponse(message="Two-factor authentication enabled")


@router.post(
    "/2fa/disable",
    response_model=MessageResponse,
    summary="Turn TOTP off",
)
async def disable_two_factor(
    request: Request,
    body: TwoFactorDisableRequest,
    principal: Principal = Depends(get_current_principal),
    store: SecurityStore = Depends(get_store),
):
    """
    Disable 2FA. Needs both the password and a current code, so a stolen
    access token alone cannot weaken the account.

    Raises:
        400: TWO_FACTOR_NOT_ENABLED
        401: INVALID_CREDENTIALS or INVALID_2FA_CODE
    """
    settings = request.app.state.settings
    db = get_db(request)

    try:
        user = _load_user(db, principal)
        if not verify_password(body.password, user.password_hash):
            logger.warning("2FA disable with wrong password for user %s", user.id)
            raise AuthenticationError("Invalid password", code="INVALID_CREDENTIALS")

        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled", code="TWO_FACTOR_NOT_ENABLED")

        if not two_factor.verify_code(user.two_factor_secret, body.code, settings.TWO_FACTOR_VALID_WINDOW):
            await counters.record_metric(store, counters.INVALID_TWO_FACTOR_CODES)
            raise AuthenticationError("Invalid two-factor code", code="INVALID_2FA_CODE")

        user.two_factor_enabled = False
        user.two_factor_secret = None
        db.add(user)
        db.commit()

        logger.info("2FA disabled for user %s", user.id)
        return MessageResponse(message="Two-factor authentication disabled")

    finally:
        db.close()
