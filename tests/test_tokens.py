"""
Vizinho Virtual Gateway - Credential and Token Tests

Unit tests for bcrypt password utilities and the JWT token issuer.

Run with: pytest tests/test_tokens.py -v
"""

from datetime import datetime, timedelta, timezone

import bcrypt
import pytest
from jose import jwt

from vizinho_gateway.auth.models import Role
from vizinho_gateway.auth.password import hash_password, needs_rehash, verify_password
from vizinho_gateway.auth.tokens import InvalidTokenError, TokenExpiredError, TokenIssuer
from tests.conftest import TEST_WORK_FACTOR


# =============================================================================
# PASSWORD HASHING TESTS
# =============================================================================

class TestPasswordHashing:
    """Unit tests for bcrypt password utilities."""

    def test_hash_password_creates_bcrypt_hash(self):
        hashed = hash_password("Morador2024", TEST_WORK_FACTOR)

        assert hashed.startswith("$2b$")
        assert len(hashed) == 60

    def test_verify_password_correct(self):
        hashed = hash_password("Morador2024", TEST_WORK_FACTOR)

        assert verify_password("Morador2024", hashed) is True

    def test_verify_password_incorrect(self):
        hashed = hash_password("Morador2024", TEST_WORK_FACTOR)

        assert verify_password("WrongPassword1", hashed) is False
        assert verify_password("", hashed) is False

    def test_verify_password_malformed_hash(self):
        """A corrupt stored hash is a failed login, not a crash."""
        assert verify_password("Morador2024", "not-a-bcrypt-hash") is False

    def test_same_password_different_hashes(self):
        hash1 = hash_password("Morador2024", TEST_WORK_FACTOR)
        hash2 = hash_password("Morador2024", TEST_WORK_FACTOR)

        assert hash1 != hash2
        assert verify_password("Morador2024", hash1)
        assert verify_password("Morador2024", hash2)

    def test_needs_rehash_lower_work_factor(self):
        old_hash = bcrypt.hashpw(b"password1", bcrypt.gensalt(rounds=4)).decode()

        assert needs_rehash(old_hash, target_work_factor=12) is True
        assert needs_rehash(old_hash, target_work_factor=4) is False

    def test_needs_rehash_non_bcrypt(self):
        assert needs_rehash("plaintext") is True


# =============================================================================
# TOKEN ISSUER TESTS
# =============================================================================

@pytest.fixture
def issuer(test_settings) -> TokenIssuer:
    return TokenIssuer(test_settings)


class TestTokenIssuer:
    """Issue and verify access/refresh pairs."""

    def test_issue_and_verify_access(self, issuer):
        pair = issuer.issue_tokens(
            subject_id="user-1",
            email="resident@vizinho.test",
            role=Role.RESIDENT,
            building_id="b1",
            unit_id="101",
        )

        principal = issuer.verify_access(pair.access_token)

        assert principal.subject_id == "user-1"
        assert principal.email == "resident@vizinho.test"
        assert principal.role == Role.RESIDENT
        assert principal.building_id == "b1"
        assert principal.unit_id == "101"
        assert principal == pair.principal

    def test_permissions_come_from_role(self, issuer):
        pair = issuer.issue_tokens("user-1", "resident@vizinho.test", Role.RESIDENT, "b1")

        assert "assembly:vote" in pair.principal.permissions
        assert "admin:*" not in pair.principal.permissions

    def test_expiry_matches_settings(self, issuer, test_settings):
        now = datetime(2026, 1, 10, 12, 0, 0, tzinfo=timezone.utc)
        pair = issuer.issue_tokens("user-1", "a@vizinho.test", Role.MANAGER, "b1", now=now)

        assert pair.principal.issued_at == now
        assert pair.principal.expires_at == now + timedelta(hours=test_settings.ACCESS_TOKEN_EXPIRE_HOURS)
        assert pair.expires_in == test_settings.ACCESS_TOKEN_EXPIRE_HOURS * 3600
        assert pair.refresh_expires_in == test_settings.REFRESH_TOKEN_EXPIRE_DAYS * 86400

    def test_claims_carry_issuer_and_audience(self, issuer, test_settings):
        pair = issuer.issue_tokens("user-1", "a@vizinho.test", Role.RESIDENT, "b1")

        claims = jwt.get_unverified_claims(pair.access_token)

        assert claims["iss"] == test_settings.JWT_ISSUER
        assert claims["aud"] == test_settings.JWT_AUDIENCE
        assert claims["type"] == "access"
        assert claims["role"] == "resident"

    def test_each_token_has_unique_id(self, issuer):
        first = issuer.issue_tokens("user-1", "a@vizinho.test", Role.RESIDENT, "b1")
        second = issuer.issue_tokens("user-1", "a@vizinho.test", Role.RESIDENT, "b1")

        assert first.principal.token_id != second.principal.token_id
        assert first.access_token != second.access_token

    def test_expired_access_token(self, issuer):
        past = datetime.now(timezone.utc) - timedelta(days=2)
        pair = issuer.issue_tokens("user-1", "a@vizinho.test", Role.RESIDENT, "b1", now=past)

        with pytest.raises(TokenExpiredError):
            issuer.verify_access(pair.access_token)

    def test_tampered_token_rejected(self, issuer):
        pair = issuer.issue_tokens("user-1", "a@vizinho.test", Role.RESIDENT, "b1")
        header, payload, signature = pair.access_token.split(".")

        with pytest.raises(InvalidTokenError):
            issuer.verify_access(".".join([header, payload + "x", signature]))

    def test_garbage_token_rejected(self, issuer):
        with pytest.raises(InvalidTokenError):
            issuer.verify_access("invalid.token.here")

    def test_wrong_key_rejected(self, issuer, test_settings):
        other = TokenIssuer(test_settings.model_copy(update={"SECRET_KEY": "another-key"}))
        pair = other.issue_tokens("user-1", "a@vizinho.test", Role.RESIDENT, "b1")

        with pytest.raises(InvalidTokenError):
            issuer.verify_access(pair.access_token)

    def test_refresh_token_is_not_an_access_token(self, issuer):
        pair = issuer.issue_tokens("user-1", "a@vizinho.test", Role.RESIDENT, "b1")

        with pytest.raises(InvalidTokenError):
            issuer.verify_access(pair.refresh_token)
        with pytest.raises(InvalidTokenError):
            issuer.verify_refresh(pair.access_token)

    def test_verify_refresh(self, issuer):
        pair = issuer.issue_tokens("user-1", "a@vizinho.test", Role.RESIDENT, "b1")

        claims = issuer.verify_refresh(pair.refresh_token)

        assert claims.subject_id == "user-1"
        assert claims.email == "a@vizinho.test"

    def test_refresh_secret_falls_back_to_secret_key(self, test_settings):
        settings = test_settings.model_copy(update={"REFRESH_SECRET_KEY": ""})

        assert settings.refresh_secret == settings.SECRET_KEY
