"""Tests for the server-side refresh token store."""

from datetime import datetime, timedelta

import pytest

from fraudwatch.service.errors import TokenInvalidError
from fraudwatch.service.token_store import TokenStore
from fraudwatch.service.tokens import TokenIssuer
from fraudwatch.storage.memory import MemoryStore
from fraudwatch.storage.models import SubjectKind


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path), persist=False)


@pytest.fixture
def issuer():
    return TokenIssuer("access-secret", "refresh-secret")


@pytest.fixture
def tokens(store, issuer):
    return TokenStore(store, issuer, keep=5)


def _issue(tokens, issuer, subject_id="u-1", expires_at=None):
    token, exp = issuer.mint_refresh({"sub": subject_id, "kind": "user"})
    tokens.issue(subject_id, token, expires_at or exp, SubjectKind.USER)
    return token


class TestResolve:
    def test_resolve_live_token(self, tokens, issuer):
        token = _issue(tokens, issuer)
        record = tokens.resolve(token)
        assert record.subject_id == "u-1"
        assert record.subject_kind is SubjectKind.USER

    def test_resolve_unknown_token(self, tokens):
        with pytest.raises(TokenInvalidError):
            tokens.resolve("never-issued")

    def test_resolve_expired_token(self, tokens, issuer):
        token = _issue(tokens, issuer, expires_at=datetime.utcnow() - timedelta(seconds=1))
        with pytest.raises(TokenInvalidError):
            tokens.resolve(token)


class TestRotate:
    def test_rotation_replaces_the_old_token(self, tokens, issuer, store):
        old = _issue(tokens, issuer)
        new = tokens.rotate(old)
        assert new.token != old
        assert new.subject_id == "u-1"
        assert store.get_refresh_token(old) is None
        assert tokens.resolve(new.token).subject_id == "u-1"

    def test_old_token_cannot_rotate_twice(self, tokens, issuer):
        old = _issue(tokens, issuer)
        tokens.rotate(old)
        with pytest.raises(TokenInvalidError):
            tokens.rotate(old)

    def test_rotating_expired_token_fails_and_consumes_it(self, tokens, issuer, store):
        old = _issue(tokens, issuer, expires_at=datetime.utcnow() - timedelta(seconds=1))
        with pytest.raises(TokenInvalidError):
            tokens.rotate(old)
        assert store.get_refresh_token(old) is None

    def test_rotated_token_is_a_valid_refresh_jwt(self, tokens, issuer):
        new = tokens.rotate(_issue(tokens, issuer))
        payload = issuer.decode_refresh(new.token)
        assert payload["sub"] == "u-1"
        assert payload["kind"] == "user"


class TestRevoke:
    def test_revoke_single(self, tokens, issuer):
        token = _issue(tokens, issuer)
        assert tokens.revoke(token) is True
        assert tokens.revoke(token) is False
        with pytest.raises(TokenInvalidError):
            tokens.resolve(token)

    def test_revoke_all_only_touches_one_subject(self, tokens, issuer, store):
        for _ in range(3):
            _issue(tokens, issuer, "u-1")
        survivor = _issue(tokens, issuer, "u-2")
        assert tokens.revoke_all("u-1") == 3
        assert store.count_refresh_tokens("u-1") == 0
        assert tokens.resolve(survivor).subject_id == "u-2"


class TestHousekeeping:
    def test_sweep_is_idempotent(self, tokens, issuer, store):
        past = datetime.utcnow() - timedelta(minutes=5)
        for _ in range(3):
            _issue(tokens, issuer, expires_at=past)
        live = _issue(tokens, issuer)
        assert tokens.sweep_expired() == 3
        assert tokens.sweep_expired() == 0
        assert tokens.resolve(live).subject_id == "u-1"

    def test_prune_keeps_newest_five(self, tokens, issuer, store):
        issued = [_issue(tokens, issuer) for _ in range(8)]
        assert tokens.prune_excess("u-1") == 3
        assert store.count_refresh_tokens("u-1") == 5
        for token in issued[:3]:
            assert store.get_refresh_token(token) is None
        for token in issued[3:]:
            assert store.get_refresh_token(token) is not None

    def test_prune_with_explicit_keep(self, tokens, issuer, store):
        for _ in range(4):
            _issue(tokens, issuer)
        assert tokens.prune_excess("u-1", keep=1) == 3
        assert store.count_refresh_tokens("u-1") == 1
