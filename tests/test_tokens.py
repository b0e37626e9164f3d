"""Tests for access/refresh token minting and verification."""

import base64
import json
from datetime import timedelta

import pytest

from fraudwatch.service.errors import TokenExpiredError, TokenInvalidError
from fraudwatch.service.tokens import TokenIssuer, subject_claims
from fraudwatch.storage.models import Admin, AdminRole, User


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return TokenIssuer("access-secret-a", "refresh-secret-b", clock=clock)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


USER = User(id="u-1", email="victim@example.com", name="Victim")


class TestIssuer:
    def test_identical_secrets_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer("same", "same")

    def test_pair_round_trip_carries_claims(self, issuer):
        pair = issuer.issue_pair(subject_claims(USER))
        access = issuer.decode_access(pair.access_token)
        refresh = issuer.decode_refresh(pair.refresh_token)
        assert access["sub"] == "u-1"
        assert access["kind"] == "user"
        assert access["email"] == "victim@example.com"
        assert access["type"] == "access"
        assert refresh["sub"] == "u-1"
        assert refresh["type"] == "refresh"
        assert "email" not in refresh

    def test_default_lifetimes(self, issuer, clock):
        pair = issuer.issue_pair(subject_claims(USER))
        access = issuer.decode_access(pair.access_token)
        refresh = issuer.decode_refresh(pair.refresh_token)
        assert access["exp"] - access["iat"] == 30 * 60
        assert refresh["exp"] - refresh["iat"] == 7 * 24 * 60 * 60

    def test_admin_claims_include_role(self, issuer):
        admin = Admin(id="a-1", username="boss", password_hash="x", role=AdminRole.SUPER_ADMIN)
        token, _ = issuer.mint_access(subject_claims(admin))
        payload = issuer.decode_access(token)
        assert payload["kind"] == "admin"
        assert payload["role"] == "SUPER_ADMIN"
        assert payload["username"] == "boss"

    def test_each_token_is_unique(self, issuer):
        first, _ = issuer.mint_refresh(subject_claims(USER))
        second, _ = issuer.mint_refresh(subject_claims(USER))
        assert first != second


class TestSecretsAreNotInterchangeable:
    def test_refresh_token_is_not_an_access_token(self, issuer):
        pair = issuer.issue_pair(subject_claims(USER))
        with pytest.raises(TokenInvalidError):
            issuer.decode_access(pair.refresh_token)

    def test_access_token_is_not_a_refresh_token(self, issuer):
        pair = issuer.issue_pair(subject_claims(USER))
        with pytest.raises(TokenInvalidError):
            issuer.decode_refresh(pair.access_token)

    def test_other_deployment_secret_rejected(self, issuer, clock):
        other = TokenIssuer("other-access", "other-refresh", clock=clock)
        token, _ = other.mint_access(subject_claims(USER))
        with pytest.raises(TokenInvalidError):
            issuer.decode_access(token)


class TestExpiry:
    def test_expired_access_token(self, issuer, clock):
        token, _ = issuer.mint_access(subject_claims(USER))
        clock.advance(30 * 60 + 121)
        with pytest.raises(TokenExpiredError):
            issuer.decode_access(token)

    def test_clock_skew_leeway(self, issuer, clock):
        token, _ = issuer.mint_access(subject_claims(USER))
        clock.advance(30 * 60 + 60)
        assert issuer.decode_access(token)["sub"] == "u-1"

    def test_custom_ttl(self, clock):
        issuer = TokenIssuer(
            "a-secret", "r-secret", access_ttl=timedelta(minutes=1), clock=clock
        )
        token, _ = issuer.mint_access(subject_claims(USER))
        clock.advance(60 + 121)
        with pytest.raises(TokenExpiredError):
            issuer.decode_access(token)


class TestTampering:
    def test_modified_payload_rejected(self, issuer):
        token, _ = issuer.mint_access(subject_claims(USER))
        header, _, signature = token.split(".")
        forged = _b64({"sub": "someone-else", "kind": "user", "type": "access"})
        with pytest.raises(TokenInvalidError):
            issuer.decode_access(f"{header}.{forged}.{signature}")

    def test_alg_none_rejected(self, issuer):
        token, _ = issuer.mint_access(subject_claims(USER))
        _, payload, _ = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(TokenInvalidError):
            issuer.decode_access(f"{header}.{payload}.")

    @pytest.mark.parametrize(
        "garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.**", "h.p.\u00e9", "\u00e9.\u00e9.\u00e9"]
    )
    def test_malformed_tokens(self, issuer, garbage):
        with pytest.raises(TokenInvalidError):
            issuer.decode_access(garbage)

    def test_non_ascii_signature_rejected(self, issuer):
        token, _ = issuer.mint_refresh(subject_claims(USER))
        header, payload, _ = token.split(".")
        with pytest.raises(TokenInvalidError):
            issuer.decode_refresh(f"{header}.{payload}.\u00e9")

    def test_wrong_audience(self, clock):
        minting = TokenIssuer("a-secret", "r-secret", audience="elsewhere", clock=clock)
        checking = TokenIssuer("a-secret", "r-secret", clock=clock)
        token, _ = minting.mint_access(subject_claims(USER))
        with pytest.raises(TokenInvalidError):
            checking.decode_access(token)
