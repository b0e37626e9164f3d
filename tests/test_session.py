"""Tests for bearer extraction and per-request subject validation."""

import pytest

from fraudwatch.service.errors import (
    AccountSuspendedError,
    SubjectNotFoundError,
    TokenInvalidError,
)
from fraudwatch.service.session import extract_bearer
from fraudwatch.service.tokens import subject_claims
from fraudwatch.storage.models import SubjectKind, SubjectStatus


class TestExtractBearer:
    def test_extracts_token(self):
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer("bearer tok") == "tok"

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic dXNlcg=="])
    def test_missing_or_wrong_scheme(self, header):
        with pytest.raises(TokenInvalidError) as excinfo:
            extract_bearer(header)
        assert excinfo.value.message == "Access token required"


class TestSessionValidator:
    def test_valid_user_token(self, runtime, make_user):
        user = make_user()
        token, _ = runtime.issuer.mint_access(subject_claims(user))
        subject = runtime.validator.validate(token, SubjectKind.USER)
        assert subject.id == user.id

    def test_suspension_applies_to_the_next_request(self, runtime, make_user):
        user = make_user()
        token, _ = runtime.issuer.mint_access(subject_claims(user))
        runtime.validator.validate(token)
        runtime.store.update_user(user.id, status=SubjectStatus.SUSPENDED)
        with pytest.raises(AccountSuspendedError):
            runtime.validator.validate(token)

    def test_deleted_subject(self, runtime, make_user):
        user = make_user()
        token, _ = runtime.issuer.mint_access(subject_claims(user))
        runtime.store.delete_user(user.id)
        with pytest.raises(SubjectNotFoundError):
            runtime.validator.validate(token)

    def test_user_token_cannot_reach_admin_routes(self, runtime, make_user):
        user = make_user()
        token, _ = runtime.issuer.mint_access(subject_claims(user))
        with pytest.raises(TokenInvalidError):
            runtime.validator.validate(token, SubjectKind.ADMIN)

    def test_admin_token(self, runtime, make_admin):
        admin = make_admin()
        token, _ = runtime.issuer.mint_access(subject_claims(admin))
        subject = runtime.validator.validate(token, SubjectKind.ADMIN)
        assert subject.username == "moderator"

    def test_refresh_token_is_not_accepted(self, runtime, make_user):
        user = make_user()
        token, _ = runtime.issuer.mint_refresh(subject_claims(user))
        with pytest.raises(TokenInvalidError):
            runtime.validator.validate(token)
