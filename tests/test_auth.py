"""
Vizinho Virtual Gateway - Authentication Test Suite

Integration tests for:
- Registration, login, refresh, logout and profile endpoints
- Login throttling
- TOTP two-factor login, enrolment and removal
- Optional authentication (anonymous-or-authenticated endpoints)
- The authentication state machine (missing, revoked, expired, invalid
  tokens; blocked and inactive users)

Run with: pytest tests/test_auth.py -v
"""

from datetime import datetime, timedelta, timezone

import pyotp
import pytest
from sqlmodel import select

from vizinho_gateway.auth.models import Role, User
from vizinho_gateway.store import BlacklistScope
from tests.conftest import auth_headers, create_user, login_user


# =============================================================================
# REGISTRATION TESTS
# =============================================================================

class TestRegisterEndpoint:
    """Integration tests for POST /api/auth/register."""

    def test_register_success(self, client):
        response = client.post(
            "/api/auth/register",
            json={
                "email": "New.Resident@Vizinho.test",
                "password": "Morador2024",
                "name": "Ana Costa",
                "building_id": "b1",
                "unit_id": "303",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["email"] == "new.resident@vizinho.test"
        assert data["role"] == "resident"
        assert data["building_id"] == "b1"
        assert "assembly:vote" in data["permissions"]
        assert "password" not in data
        assert "password_hash" not in data

    def test_register_then_login(self, client):
        client.post(
            "/api/auth/register",
            json={"email": "ana@vizinho.test", "password": "Morador2024", "name": "Ana Costa", "building_id": "b1"},
        )

        assert login_user(client, "ana@vizinho.test", "Morador2024") is not None

    def test_register_duplicate_email(self, client, resident_user):
        response = client.post(
            "/api/auth/register",
            json={"email": "resident@vizinho.test", "password": "Morador2024", "name": "Ana Costa"},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "EMAIL_ALREADY_EXISTS"

    def test_register_admin_forbidden(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "sneaky@vizinho.test", "password": "Morador2024", "name": "Sneaky", "role": "admin"},
        )

        assert response.status_code == 403
        assert response.json()["code"] == "ROLE_NOT_ALLOWED"

    def test_register_weak_password(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "ana@vizinho.test", "password": "onlyletters", "name": "Ana Costa"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"][0]["field"] == "password"

    def test_register_invalid_email(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "not-an-email", "password": "Morador2024", "name": "Ana Costa"},
        )

        assert response.status_code == 400


# =============================================================================
# LOGIN TESTS
# =============================================================================

class TestLoginEndpoint:
    """Integration tests for POST /api/auth/login."""

    def test_login_success(self, client, resident_user):
        response = client.post(
            "/api/auth/login",
            json={"email": "resident@vizinho.test", "password": "ResidentPass123"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 24 * 3600
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["user"]["email"] == "resident@vizinho.test"
        assert data["user"]["unit_id"] == "101"

    def test_login_email_case_insensitive(self, client, resident_user):
        assert login_user(client, "Resident@Vizinho.TEST", "ResidentPass123") is not None

    def test_login_stores_session_state(self, client, store, resident_user):
        data = login_user(client, "resident@vizinho.test", "ResidentPass123")
        user_id = str(resident_user.id)

        assert client.portal.call(store.is_user_active, user_id)
        assert client.portal.call(store.get_refresh_token, user_id) == data["refresh_token"]

    def test_login_records_last_login(self, client, db_session, resident_user):
        login_user(client, "resident@vizinho.test", "ResidentPass123")

        db_session.expire_all()
        user = db_session.exec(select(User).where(User.id == resident_user.id)).first()
        assert user.last_login_at is not None

    def test_login_invalid_password(self, client, resident_user):
        response = client.post(
            "/api/auth/login",
            json={"email": "resident@vizinho.test", "password": "WrongPass123"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_login_user_not_found(self, client):
        response = client.post(
            "/api/auth/login",
            json={"email": "ghost@vizinho.test", "password": "WhoAmI123"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"

    def test_login_inactive_user(self, client, inactive_user):
        response = client.post(
            "/api/auth/login",
            json={"email": "inactive@vizinho.test", "password": "InactivePass123"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "ACCOUNT_DISABLED"

    def test_login_upgrades_weak_hash(self, client, db_session, test_settings):
        # create_user hashes with work factor 4
        user = create_user(db_session, "legacy@vizinho.test", "LegacyPass123", Role.RESIDENT, building_id="b1")

        strong = test_settings.model_copy(update={"BCRYPT_WORK_FACTOR": 5})
        client.app.state.settings = strong

        assert login_user(client, "legacy@vizinho.test", "LegacyPass123") is not None

        db_session.expire_all()
        refreshed = db_session.exec(select(User).where(User.id == user.id)).first()
        assert refreshed.password_hash.startswith("$2b$05$")


class TestLoginThrottling:

    def test_failures_lock_out_ip(self, client, resident_user, test_settings):
        for _ in range(test_settings.LOGIN_MAX_FAILURES):
            response = client.post(
                "/api/auth/login",
                json={"email": "resident@vizinho.test", "password": "WrongPass123"},
            )
            assert response.status_code == 401

        # Even the right password is refused now
        response = client.post(
            "/api/auth/login",
            json={"email": "resident@vizinho.test", "password": "ResidentPass123"},
        )

        assert response.status_code == 429
        assert response.json()["code"] == "TOO_MANY_LOGIN_ATTEMPTS"
        assert int(response.headers["Retry-After"]) >= 1

    def test_successful_logins_do_not_count(self, client, resident_user, test_settings):
        for _ in range(test_settings.LOGIN_MAX_FAILURES + 1):
            assert login_user(client, "resident@vizinho.test", "ResidentPass123") is not None

    def test_lockout_expires(self, client, clock, resident_user, test_settings):
        for _ in range(test_settings.LOGIN_MAX_FAILURES):
            client.post("/api/auth/login", json={"email": "resident@vizinho.test", "password": "WrongPass123"})

        clock.advance(test_settings.LOGIN_FAILURE_WINDOW_SECONDS)

        assert login_user(client, "resident@vizinho.test", "ResidentPass123") is not None


# =============================================================================
# AUTHENTICATION STATE MACHINE
# =============================================================================

class TestAuthentication:

    def test_me_with_valid_token(self, client, resident_headers, resident_user):
        response = client.get("/api/auth/me", headers=resident_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == str(resident_user.id)
        assert data["name"] == "Maria Silva"
        assert "financial:pay" in data["permissions"]

    def test_missing_token(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["code"] == "MISSING_TOKEN"

    def test_invalid_token(self, client):
        response = client.get("/api/auth/me", headers=auth_headers("invalid.token.here"))

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"

    def test_expired_token(self, client, store, resident_user):
        past = datetime.now(timezone.utc) - timedelta(days=2)
        pair = client.app.state.issuer.issue_tokens(
            str(resident_user.id), resident_user.email, Role.RESIDENT, "b1", now=past,
        )
        client.portal.call(store.mark_user_active, str(resident_user.id), 3600)

        response = client.get("/api/auth/me", headers=auth_headers(pair.access_token))

        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_EXPIRED"

    def test_blacklisted_token_checked_before_signature(self, client, store):
        client.portal.call(store.add_to_blacklist, BlacklistScope.TOKEN, "revoked.token.value", "manual", 60)

        response = client.get("/api/auth/me", headers=auth_headers("revoked.token.value"))

        assert response.json()["code"] == "TOKEN_BLACKLISTED"

    def test_blacklisted_user(self, client, store, resident_user, resident_headers):
        client.portal.call(store.add_to_blacklist, BlacklistScope.USER, str(resident_user.id), "fraud", 60)

        response = client.get("/api/auth/me", headers=resident_headers)

        assert response.status_code == 403
        assert response.json()["code"] == "USER_BLACKLISTED"

    def test_inactive_user_marker(self, client, store, resident_user, resident_headers):
        client.portal.call(store.clear_user_active, str(resident_user.id))

        response = client.get("/api/auth/me", headers=resident_headers)

        assert response.status_code == 401
        assert response.json()["code"] == "USER_INACTIVE"


# =============================================================================
# REFRESH / LOGOUT
# =============================================================================

class TestRefreshAndLogout:

    def test_refresh_rotates_pair(self, client, resident_user):
        first = login_user(client, "resident@vizinho.test", "ResidentPass123")

        response = client.post("/api/auth/refresh", json={"refresh_token": first["refresh_token"]})

        assert response.status_code == 200
        second = response.json()
        assert second["refresh_token"] != first["refresh_token"]
        assert client.get("/api/auth/me", headers=auth_headers(second["access_token"])).status_code == 200

        # The old refresh token is no longer accepted
        reuse = client.post("/api/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert reuse.status_code == 401
        assert reuse.json()["code"] == "INVALID_REFRESH_TOKEN"

    def test_refresh_with_access_token_rejected(self, client, resident_user):
        tokens = login_user(client, "resident@vizinho.test", "ResidentPass123")

        response = client.post("/api/auth/refresh", json={"refresh_token": tokens["access_token"]})

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_REFRESH_TOKEN"

    def test_refresh_garbage(self, client):
        response = client.post("/api/auth/refresh", json={"refresh_token": "nonsense"})

        assert response.status_code == 401

    def test_logout_revokes_token(self, client, store, resident_user):
        tokens = login_user(client, "resident@vizinho.test", "ResidentPass123")
        headers = auth_headers(tokens["access_token"])

        response = client.post("/api/auth/logout", headers=headers)

        assert response.status_code == 200
        again = client.get("/api/auth/me", headers=headers)
        assert again.status_code == 401
        assert again.json()["code"] == "TOKEN_BLACKLISTED"
        assert client.portal.call(store.get_refresh_token, str(resident_user.id)) is None

    def test_logout_then_refresh_fails(self, client, resident_user):
        tokens = login_user(client, "resident@vizinho.test", "ResidentPass123")
        client.post("/api/auth/logout", headers=auth_headers(tokens["access_token"]))

        response = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert response.status_code == 401

    def test_logout_requires_token(self, client):
        assert client.post("/api/auth/logout").status_code == 401


# =============================================================================
# OPTIONAL AUTHENTICATION
# =============================================================================

class TestOptionalAuthentication:
    """GET /api/auth/session serves anonymous and authenticated callers alike."""

    def test_no_token_is_anonymous(self, client):
        response = client.get("/api/auth/session")

        assert response.status_code == 200
        assert response.json()["authenticated"] is False
        assert response.json()["subject_id"] is None

    def test_garbage_token_is_anonymous(self, client):
        response = client.get("/api/auth/session", headers=auth_headers("garbage.token.value"))

        assert response.status_code == 200
        assert response.json()["authenticated"] is False

    def test_expired_token_is_anonymous(self, client, store, resident_user):
        past = datetime.now(timezone.utc) - timedelta(days=2)
        pair = client.app.state.issuer.issue_tokens(
            str(resident_user.id), resident_user.email, Role.RESIDENT, "b1", now=past,
        )
        client.portal.call(store.mark_user_active, str(resident_user.id), 3600)

        response = client.get("/api/auth/session", headers=auth_headers(pair.access_token))

        assert response.json()["authenticated"] is False

    def test_blacklisted_token_is_anonymous(self, client, store, resident_user):
        tokens = login_user(client, "resident@vizinho.test", "ResidentPass123")
        client.portal.call(store.add_to_blacklist, BlacklistScope.TOKEN, tokens["access_token"], "logout", 60)

        response = client.get("/api/auth/session", headers=auth_headers(tokens["access_token"]))

        assert response.json()["authenticated"] is False

    def test_valid_token_returns_principal(self, client, resident_user, resident_headers):
        response = client.get("/api/auth/session", headers=resident_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["authenticated"] is True
        assert data["subject_id"] == str(resident_user.id)
        assert data["email"] == "resident@vizinho.test"
        assert data["role"] == "resident"
        assert data["building_id"] == "b1"
        assert data["expires_at"] is not None


# =============================================================================
# TWO-FACTOR AUTHENTICATION
# =============================================================================

def wrong_code(secret: str) -> str:
    """A six-digit code outside every time step the server accepts."""
    totp = pyotp.TOTP(secret)
    now = datetime.now()
    accepted = {totp.at(now, offset) for offset in range(-3, 4)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in accepted)


@pytest.fixture
def two_factor_user(db_session, resident_user) -> User:
    resident_user.two_factor_secret = pyotp.random_base32()
    resident_user.two_factor_enabled = True
    db_session.add(resident_user)
    db_session.commit()
    db_session.refresh(resident_user)
    return resident_user


def _login(client, **extra):
    return client.post(
        "/api/auth/login",
        json={"email": "resident@vizinho.test", "password": "ResidentPass123", **extra},
    )


class TestTwoFactorLogin:

    def test_code_required(self, client, two_factor_user):
        response = _login(client)

        assert response.status_code == 200
        data = response.json()
        assert data["requires_two_factor"] is True
        assert "access_token" not in data

    def test_valid_code_issues_tokens(self, client, two_factor_user):
        code = pyotp.TOTP(two_factor_user.two_factor_secret).now()

        response = _login(client, two_factor_code=code)

        assert response.status_code == 200
        data = response.json()
        assert "access_token" in data
        assert data["user"]["two_factor_enabled"] is True

    def test_invalid_code(self, client, two_factor_user):
        response = _login(client, two_factor_code=wrong_code(two_factor_user.two_factor_secret))

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_2FA_CODE"

    def test_invalid_codes_count_as_login_failures(self, client, two_factor_user, test_settings):
        bad = wrong_code(two_factor_user.two_factor_secret)
        for _ in range(test_settings.LOGIN_MAX_FAILURES):
            _login(client, two_factor_code=bad)

        response = _login(client, two_factor_code=pyotp.TOTP(two_factor_user.two_factor_secret).now())

        assert response.status_code == 429
        assert response.json()["code"] == "TOO_MANY_LOGIN_ATTEMPTS"

    def test_wrong_password_checked_before_code(self, client, two_factor_user):
        response = client.post(
            "/api/auth/login",
            json={"email": "resident@vizinho.test", "password": "wrong-password"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"

    def test_users_without_two_factor_ignore_code(self, client, resident_user):
        response = _login(client, two_factor_code="123456")

        assert response.status_code == 200
        assert "access_token" in response.json()


class TestTwoFactorEnrolment:

    def test_setup_verify_and_login(self, client, store, resident_user, resident_headers):
        setup = client.post("/api/auth/2fa/setup", headers=resident_headers)

        assert setup.status_code == 200
        secret = setup.json()["secret"]
        assert setup.json()["otpauth_url"].startswith("otpauth://totp/")
        assert "resident%40vizinho.test" in setup.json()["otpauth_url"]

        # Still off until a code is verified
        assert "access_token" in _login(client).json()

        verify = client.post(
            "/api/auth/2fa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=resident_headers,
        )

        assert verify.status_code == 200
        assert client.portal.call(store.get, f"two_factor_setup:{resident_user.id}") is None
        assert _login(client).json()["requires_two_factor"] is True

    def test_verify_without_setup(self, client, resident_headers):
        response = client.post("/api/auth/2fa/verify", json={"code": "123456"}, headers=resident_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "NO_2FA_SETUP"

    def test_verify_wrong_code(self, client, resident_headers):
        secret = client.post("/api/auth/2fa/setup", headers=resident_headers).json()["secret"]

        response = client.post("/api/auth/2fa/verify", json={"code": wrong_code(secret)}, headers=resident_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_2FA_CODE"

    def test_pending_setup_expires(self, client, clock, test_settings, resident_headers):
        secret = client.post("/api/auth/2fa/setup", headers=resident_headers).json()["secret"]
        clock.advance(test_settings.TWO_FACTOR_SETUP_TTL_SECONDS + 1)

        response = client.post(
            "/api/auth/2fa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=resident_headers,
        )

        assert response.json()["code"] == "NO_2FA_SETUP"

    def test_setup_when_already_enabled(self, client, two_factor_user):
        code = pyotp.TOTP(two_factor_user.two_factor_secret).now()
        headers = auth_headers(_login(client, two_factor_code=code).json()["access_token"])

        response = client.post("/api/auth/2fa/setup", headers=headers)

        assert response.status_code == 409
        assert response.json()["code"] == "TWO_FACTOR_ALREADY_ENABLED"

    def test_setup_requires_authentication(self, client):
        assert client.post("/api/auth/2fa/setup").status_code == 401


class TestTwoFactorDisable:

    @pytest.fixture
    def headers(self, client, two_factor_user) -> dict:
        code = pyotp.TOTP(two_factor_user.two_factor_secret).now()
        return auth_headers(_login(client, two_factor_code=code).json()["access_token"])

    def test_disable(self, client, db_session, two_factor_user, headers):
        code = pyotp.TOTP(two_factor_user.two_factor_secret).now()

        response = client.post(
            "/api/auth/2fa/disable", json={"password": "ResidentPass123", "code": code}, headers=headers,
        )

        assert response.status_code == 200
        db_session.expire_all()
        user = db_session.exec(select(User).where(User.id == two_factor_user.id)).one()
        assert user.two_factor_enabled is False
        assert user.two_factor_secret is None
        assert "access_token" in _login(client).json()

    def test_disable_wrong_password(self, client, two_factor_user, headers):
        code = pyotp.TOTP(two_factor_user.two_factor_secret).now()

        response = client.post(
            "/api/auth/2fa/disable", json={"password": "nope", "code": code}, headers=headers,
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"

    def test_disable_wrong_code(self, client, two_factor_user, headers):
        response = client.post(
            "/api/auth/2fa/disable",
            json={"password": "ResidentPass123", "code": wrong_code(two_factor_user.two_factor_secret)},
            headers=headers,
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_2FA_CODE"

    def test_disable_when_not_enabled(self, client, resident_headers):
        response = client.post(
            "/api/auth/2fa/disable", json={"password": "ResidentPass123", "code": "123456"}, headers=resident_headers,
        )

        assert response.status_code == 400
        assert response.json()["code"] == "TWO_FACTOR_NOT_ENABLED"
