from datetime import datetime, timedelta

import pytest

from fraudwatch.storage.errors import ConstraintViolation
from fraudwatch.storage.memory import MemoryStore
from fraudwatch.storage.models import AdminRole, ReportStatus, SubjectKind, SubjectStatus


def test_state_survives_restart(tmp_path):
    store = MemoryStore(str(tmp_path))
    user = store.create_user("a@example.com", "Alice", google_id="g-a")
    admin = store.create_admin("boss", "hash", role=AdminRole.SUPER_ADMIN)
    report = store.create_report(user.id, "Fake landlord asking for a deposit", phone="+1555")
    store.add_report_images(report.id, [("x.jpg", "images/x.jpg", 10)])
    store.update_report(report.id, status=ReportStatus.APPROVED, reviewed_by=admin.id)
    store.create_refresh_token(
        "tok", user.id, SubjectKind.USER, datetime.utcnow() + timedelta(days=1)
    )

    reloaded = MemoryStore(str(tmp_path))
    assert reloaded.get_user(user.id).status is SubjectStatus.ACTIVE
    assert reloaded.get_admin_by_username("boss").role is AdminRole.SUPER_ADMIN
    restored = reloaded.get_report(report.id)
    assert restored.status is ReportStatus.APPROVED
    assert [img.filename for img in restored.images] == ["x.jpg"]
    assert reloaded.get_refresh_token("tok").subject_kind is SubjectKind.USER
    # sequences continue after the restored ids
    second = reloaded.create_report(user.id, "Another scam with a fake invoice", email="b@x.io")
    assert second.id > report.id


def test_unpersisted_store_writes_nothing(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    store.create_user("a@example.com", "Alice")
    assert not (tmp_path / "state").exists()


def test_unique_email_and_username(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    store.create_user("a@example.com", "Alice")
    with pytest.raises(ConstraintViolation):
        store.create_user("a@example.com", "Other")
    store.create_admin("boss", "hash")
    with pytest.raises(ConstraintViolation):
        store.create_admin("boss", "hash")


def test_report_requires_existing_user(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    with pytest.raises(ConstraintViolation):
        store.create_report("ghost", "Nobody filed this report at all", email="a@b.io")


def test_conditional_delete(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    user = store.create_user("a@example.com", "Alice")
    report = store.create_report(user.id, "Fake parcel delivery charge", email="s@x.io")
    store.update_report(report.id, status=ReportStatus.APPROVED)
    assert store.delete_report(report.id, required_status=ReportStatus.PENDING) is None
    assert store.get_report(report.id) is not None
    assert store.delete_report(report.id) == []


def test_conditional_update(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    user = store.create_user("a@example.com", "Alice")
    report = store.create_report(user.id, "Fake parcel delivery charge", email="s@x.io")
    store.update_report(report.id, status=ReportStatus.APPROVED)
    owner_statuses = (ReportStatus.PENDING, ReportStatus.REJECTED)
    assert (
        store.update_report(
            report.id, required_statuses=owner_statuses, status=ReportStatus.REJECTED
        )
        is None
    )
    assert store.get_report(report.id).status is ReportStatus.APPROVED


def test_image_batch_is_all_or_nothing(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    user = store.create_user("a@example.com", "Alice")
    report = store.create_report(user.id, "Fake parcel delivery charge", email="s@x.io")
    batch = [(f"{n}.jpg", f"images/{n}.jpg", 1) for n in range(3)]
    store.add_report_images(report.id, batch, max_images=5)
    with pytest.raises(ConstraintViolation) as excinfo:
        store.add_report_images(report.id, batch, max_images=5)
    assert excinfo.value.constraint == "report_image_limit"
    assert len(store.get_report(report.id).images) == 3

    store.update_report(report.id, status=ReportStatus.APPROVED)
    with pytest.raises(ConstraintViolation) as excinfo:
        store.add_report_images(report.id, batch[:1], required_status=ReportStatus.PENDING)
    assert excinfo.value.constraint == "report_status"
    with pytest.raises(ConstraintViolation) as excinfo:
        store.add_report_images(999, batch[:1])
    assert excinfo.value.constraint == "report_exists"


def test_consume_is_single_use(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    store.create_refresh_token(
        "tok", "u-1", SubjectKind.USER, datetime.utcnow() + timedelta(days=1)
    )
    assert store.consume_refresh_token("tok").subject_id == "u-1"
    assert store.consume_refresh_token("tok") is None


def test_returned_objects_are_copies(tmp_path):
    store = MemoryStore(str(tmp_path), persist=False)
    user = store.create_user("a@example.com", "Alice")
    user.status = SubjectStatus.SUSPENDED
    assert store.get_user(user.id).status is SubjectStatus.ACTIVE
