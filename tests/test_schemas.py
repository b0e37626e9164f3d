import pytest
from pydantic import ValidationError

from fraudwatch.api.schemas import (
    ErrorEnvelope,
    GoogleAuthRequest,
    OwnerStatusRequest,
    PublicReportResponse,
    ReportCreateRequest,
    ReviewRequest,
)
from fraudwatch.storage.models import FraudReport, ReportImage, ReportStatus


class TestReportCreateRequest:
    def test_normalises_identity_fields(self):
        body = ReportCreateRequest(
            email="  Scammer@Example.COM ",
            phone="",
            social_id="@scam\u200bmer",
            description="Sold tickets that never existed.",
        )
        assert body.email == "scammer@example.com"
        assert body.phone is None
        assert body.social_id == "@scammer"

    def test_requires_an_identity(self):
        with pytest.raises(ValidationError):
            ReportCreateRequest(description="Sold tickets that never existed.")

    @pytest.mark.parametrize("email", ["not-an-email", "a@b", "x@-bad-.com"])
    def test_rejects_bad_email(self, email):
        with pytest.raises(ValidationError):
            ReportCreateRequest(email=email, description="Sold tickets that never existed.")

    def test_rejects_bad_phone(self):
        with pytest.raises(ValidationError):
            ReportCreateRequest(phone="call me", description="Sold tickets that never existed.")


class TestStatusRequests:
    def test_owner_statuses(self):
        assert OwnerStatusRequest(status="REJECTED").status is ReportStatus.REJECTED
        with pytest.raises(ValidationError):
            OwnerStatusRequest(status="APPROVED")

    def test_review_requires_reason_on_reject(self):
        with pytest.raises(ValidationError):
            ReviewRequest(status="REJECTED")
        with pytest.raises(ValidationError):
            ReviewRequest(status="REJECTED", reason="   ")
        assert ReviewRequest(status="APPROVED").reason is None

    @pytest.mark.parametrize("key", ["reason", "rejectionReason", "rejection_reason"])
    def test_review_reason_aliases(self, key):
        body = ReviewRequest.model_validate({"status": "REJECTED", key: " Fake screenshots "})
        assert body.reason == "Fake screenshots"

    def test_review_cannot_reset_to_pending(self):
        with pytest.raises(ValidationError):
            ReviewRequest(status="PENDING")


def test_google_request_rejects_non_http_picture():
    with pytest.raises(ValidationError):
        GoogleAuthRequest(
            google_id="g", email="a@example.com", name="Ann", profile_picture="javascript:x"
        )


def test_error_envelope_only_accepts_known_codes():
    assert ErrorEnvelope(error="nope", code="NOT_FOUND").success is False
    with pytest.raises(ValidationError):
        ErrorEnvelope(error="nope", code="teapot")


def test_public_report_hides_private_fields():
    report = FraudReport(
        id=1,
        user_id="u-1",
        description="Fake rental listing",
        phone="+15550100",
        status=ReportStatus.APPROVED,
        reviewed_by="a-1",
        images=[ReportImage(id=1, report_id=1, filename="x.jpg", path="images/x.jpg", size=3)],
    )
    public = PublicReportResponse.from_model(report).model_dump()
    assert public["image_count"] == 1
    assert "user_id" not in public
    assert "reviewed_by" not in public
    assert "images" not in public
