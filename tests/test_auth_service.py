"""Unit tests for AuthService: Google sign-in, admin login, refresh and logout."""

import pytest

from fraudwatch.service.errors import (
    AccountSuspendedError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    SubjectNotFoundError,
    TokenInvalidError,
    ValidationError,
)
from fraudwatch.storage.models import AdminRole, SubjectKind, SubjectStatus


async def _google(runtime, google_id="g-1", email="jane@example.com", name="Jane Doe"):
    return await runtime.auth.google_login(google_id=google_id, email=email, name=name)


class TestGoogleLogin:
    @pytest.mark.asyncio
    async def test_first_login_creates_user(self, runtime):
        result = await _google(runtime)
        assert result.subject.email == "jane@example.com"
        assert result.subject.google_id == "g-1"
        assert runtime.store.get_refresh_token(result.tokens.refresh_token) is not None

    @pytest.mark.asyncio
    async def test_second_login_reuses_user(self, runtime):
        first = await _google(runtime)
        second = await _google(runtime)
        assert first.subject.id == second.subject.id

    @pytest.mark.asyncio
    async def test_links_google_id_to_existing_email(self, runtime):
        existing = runtime.store.create_user("jane@example.com", "Jane")
        result = await _google(runtime)
        assert result.subject.id == existing.id
        assert runtime.store.get_user(existing.id).google_id == "g-1"

    @pytest.mark.asyncio
    async def test_email_owned_by_other_google_account(self, runtime):
        await _google(runtime, google_id="g-1")
        with pytest.raises(InvalidCredentialsError):
            await _google(runtime, google_id="g-2")

    @pytest.mark.asyncio
    async def test_suspended_user_cannot_login(self, runtime):
        first = await _google(runtime)
        runtime.store.update_user(first.subject.id, status=SubjectStatus.SUSPENDED)
        with pytest.raises(AccountSuspendedError):
            await _google(runtime)

    @pytest.mark.asyncio
    async def test_refresh_tokens_pruned_to_five(self, runtime):
        for _ in range(8):
            result = await _google(runtime)
        assert runtime.store.count_refresh_tokens(result.subject.id) == 5


class TestAdminLogin:
    @pytest.mark.asyncio
    async def test_round_trip(self, runtime, make_admin):
        admin = make_admin(password="correct horse")
        result = await runtime.auth.admin_login("moderator", "correct horse")
        assert result.subject.id == admin.id
        assert result.subject.last_login is not None
        payload = runtime.issuer.decode_access(result.tokens.access_token)
        assert payload["kind"] == SubjectKind.ADMIN.value

    @pytest.mark.asyncio
    async def test_unknown_user_and_wrong_password_look_the_same(self, runtime, make_admin):
        make_admin(password="correct horse")
        with pytest.raises(InvalidCredentialsError) as unknown:
            await runtime.auth.admin_login("nobody", "correct horse")
        with pytest.raises(InvalidCredentialsError) as wrong:
            await runtime.auth.admin_login("moderator", "wrong horse")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    @pytest.mark.asyncio
    async def test_suspended_admin(self, runtime, make_admin):
        admin = make_admin(password="correct horse")
        runtime.store.update_admin(admin.id, status=SubjectStatus.SUSPENDED)
        with pytest.raises(AccountSuspendedError):
            await runtime.auth.admin_login("moderator", "correct horse")

    def test_password_is_stored_as_argon2id(self, runtime, make_admin):
        admin = make_admin(password="correct horse")
        assert admin.password_hash.startswith("$argon2id$")
        assert "correct horse" not in admin.password_hash


class TestAdminManagement:
    def test_super_admin_creates_moderator(self, runtime, make_admin):
        boss = make_admin("boss", role=AdminRole.SUPER_ADMIN)
        created = runtime.auth.create_admin(boss, "helper", "helper-pass", AdminRole.MODERATOR)
        assert created.role is AdminRole.MODERATOR
        assert [a.username for a in runtime.auth.list_admins(boss)] == ["boss", "helper"]

    def test_moderator_cannot_create_admins(self, runtime, make_admin):
        moderator = make_admin()
        with pytest.raises(ForbiddenError):
            runtime.auth.create_admin(moderator, "helper", "helper-pass")
        with pytest.raises(ForbiddenError):
            runtime.auth.list_admins(moderator)

    def test_duplicate_username(self, runtime, make_admin):
        boss = make_admin("boss", role=AdminRole.SUPER_ADMIN)
        with pytest.raises(ConflictError):
            runtime.auth.create_admin(boss, "boss", "another-pass")

    def test_short_password(self, runtime, make_admin):
        boss = make_admin("boss", role=AdminRole.SUPER_ADMIN)
        with pytest.raises(ValidationError):
            runtime.auth.create_admin(boss, "helper", "short")


class TestRefreshAndLogout:
    @pytest.mark.asyncio
    async def test_refresh_rotates(self, runtime):
        login = await _google(runtime)
        refreshed = await runtime.auth.refresh(login.tokens.refresh_token)
        assert refreshed.tokens.refresh_token != login.tokens.refresh_token
        assert refreshed.subject.id == login.subject.id
        with pytest.raises(TokenInvalidError):
            await runtime.auth.refresh(login.tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_refresh_for_suspended_user_revokes_new_token(self, runtime):
        login = await _google(runtime)
        runtime.store.update_user(login.subject.id, status=SubjectStatus.SUSPENDED)
        with pytest.raises(AccountSuspendedError):
            await runtime.auth.refresh(login.tokens.refresh_token)
        assert runtime.store.count_refresh_tokens(login.subject.id) == 0

    @pytest.mark.asyncio
    async def test_refresh_for_deleted_user(self, runtime):
        login = await _google(runtime)
        runtime.store.users.pop(login.subject.id)
        with pytest.raises(SubjectNotFoundError):
            await runtime.auth.refresh(login.tokens.refresh_token)
        assert runtime.store.count_refresh_tokens(login.subject.id) == 0

    @pytest.mark.asyncio
    async def test_access_token_cannot_refresh(self, runtime):
        login = await _google(runtime)
        with pytest.raises(TokenInvalidError):
            await runtime.auth.refresh(login.tokens.access_token)

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, runtime):
        login = await _google(runtime)
        assert await runtime.auth.logout(login.tokens.refresh_token) is True
        assert await runtime.auth.logout(login.tokens.refresh_token) is False
        assert await runtime.auth.logout(None) is False
        with pytest.raises(TokenInvalidError):
            await runtime.auth.refresh(login.tokens.refresh_token)
