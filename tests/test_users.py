"""Tests for profile management and admin-side user administration."""

import pytest

from fraudwatch.service.errors import NotFoundError, ValidationError
from fraudwatch.service.files import UploadedImage
from fraudwatch.service.tokens import subject_claims
from fraudwatch.storage.models import SubjectKind, SubjectStatus


@pytest.fixture
def moderator(make_admin):
    return make_admin()


class TestProfile:
    def test_update_name_and_picture(self, runtime, make_user):
        user = make_user()
        updated = runtime.users.update_profile(
            user.id, name="  New Name ", profile_picture="https://cdn.example.com/me.png"
        )
        assert updated.name == "New Name"
        assert updated.profile_picture == "https://cdn.example.com/me.png"

    def test_clear_picture(self, runtime, make_user):
        user = make_user()
        runtime.users.update_profile(user.id, profile_picture="https://cdn.example.com/me.png")
        cleared = runtime.users.update_profile(user.id, profile_picture=None)
        assert cleared.profile_picture is None
        assert cleared.name == user.name

    @pytest.mark.parametrize("name", ["x", "y" * 101])
    def test_name_length(self, runtime, make_user, name):
        user = make_user()
        with pytest.raises(ValidationError):
            runtime.users.update_profile(user.id, name=name)

    def test_missing_user(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.users.get_profile("no-such-user")


class TestAdministration:
    def test_list_and_search(self, runtime, make_user):
        make_user("alice@example.com", name="Alice")
        make_user("bob@example.com", name="Bob")
        page = runtime.users.list_users(search="ALI")
        assert [u.email for u in page.items] == ["alice@example.com"]
        assert runtime.users.list_users().total == 2

    def test_filter_by_status(self, runtime, make_user, moderator):
        active = make_user()
        suspended = make_user()
        runtime.users.set_status(moderator, suspended.id, SubjectStatus.SUSPENDED)
        page = runtime.users.list_users(status=SubjectStatus.ACTIVE)
        assert [u.id for u in page.items] == [active.id]

    def test_suspension_revokes_refresh_tokens(self, runtime, make_user, moderator):
        user = make_user()
        for _ in range(3):
            token, exp = runtime.issuer.mint_refresh(subject_claims(user))
            runtime.tokens.issue(user.id, token, exp, SubjectKind.USER)
        runtime.users.set_status(moderator, user.id, SubjectStatus.SUSPENDED)
        assert runtime.store.count_refresh_tokens(user.id) == 0

    def test_reactivate(self, runtime, make_user, moderator):
        user = make_user()
        runtime.users.set_status(moderator, user.id, SubjectStatus.SUSPENDED)
        restored = runtime.users.set_status(moderator, user.id, SubjectStatus.ACTIVE)
        assert restored.is_active

    def test_delete_cascades(self, runtime, make_user, moderator, image_bytes):
        user = make_user()
        report = runtime.reports.submit(
            user.id, "Sold a phone and never shipped it.", phone="+15550100"
        )
        records = runtime.reports.attach_images(
            user.id, report.id, [UploadedImage("proof.png", "image/png", image_bytes())]
        )
        token, exp = runtime.issuer.mint_refresh(subject_claims(user))
        runtime.tokens.issue(user.id, token, exp, SubjectKind.USER)

        runtime.users.delete_user(moderator, user.id)

        assert runtime.store.get_user(user.id) is None
        assert runtime.store.get_report(report.id) is None
        assert runtime.store.count_refresh_tokens(user.id) == 0
        assert not (runtime.files.upload_root / records[0].path).exists()

    def test_delete_missing_user(self, runtime, moderator):
        with pytest.raises(NotFoundError):
            runtime.users.delete_user(moderator, "no-such-user")

    def test_set_status_missing_user(self, runtime, moderator):
        with pytest.raises(NotFoundError):
            runtime.users.set_status(moderator, "no-such-user", SubjectStatus.SUSPENDED)


class TestUserInsights:
    def test_user_stats(self, runtime, make_user, moderator):
        users = [make_user() for _ in range(12)]
        runtime.users.set_status(moderator, users[0].id, SubjectStatus.SUSPENDED)
        stats = runtime.users.user_stats()
        assert stats["total_users"] == 12
        assert stats["active_users"] == 11
        assert stats["suspended_users"] == 1
        assert len(stats["recent_users"]) == 10

    def test_user_activity_counts_reports(self, runtime, make_user):
        user = make_user()
        runtime.reports.submit(user.id, "Sold a phone that never shipped.", email="s@x.io")
        runtime.reports.submit(user.id, "Same seller under another number.", phone="+15550100")
        activity = runtime.users.user_activity(user.id)
        assert activity["user"].id == user.id
        assert activity["report_count"] == 2

    def test_user_activity_missing_user(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.users.user_activity("no-such-user")
