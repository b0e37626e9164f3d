from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from fraudwatch.logging import get_logger
from fraudwatch.service.errors import (
    CannotUpdateApprovedError,
    DuplicateReportError,
    NotFoundError,
    ReportProcessedError,
    ValidationError,
)
from fraudwatch.service.files import FileService, UploadedImage
from fraudwatch.storage.errors import ConstraintViolation, DuplicateIdentity
from fraudwatch.storage.models import (
    Admin,
    FraudReport,
    IdentityField,
    Page,
    ReportImage,
    ReportStatus,
    SubjectStatus,
)

logger = get_logger(__name__)

OWNER_STATUSES = (ReportStatus.PENDING, ReportStatus.REJECTED)
REVIEW_STATUSES = (ReportStatus.APPROVED, ReportStatus.REJECTED)
SEARCH_LIMIT = 50
RECENT_LIMIT_MAX = 50
STATS_WINDOW = timedelta(days=30)


class ReportStore(Protocol):
    def find_duplicate_report(
        self, user_id: str, identities: Dict[IdentityField, str]
    ) -> Optional[FraudReport]: ...

    def create_report(
        self,
        user_id: str,
        description: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        social_id: Optional[str] = None,
    ) -> FraudReport: ...

    def get_report(self, report_id: int) -> Optional[FraudReport]: ...

    def update_report(
        self,
        report_id: int,
        *,
        required_statuses: Optional[Sequence[ReportStatus]] = None,
        **changes,
    ) -> Optional[FraudReport]: ...

    def delete_report(
        self, report_id: int, *, required_status: Optional[ReportStatus] = None
    ) -> Optional[List[ReportImage]]: ...

    def add_report_images(
        self,
        report_id: int,
        images: Sequence[Tuple[str, str, int]],
        *,
        required_status: Optional[ReportStatus] = None,
        max_images: Optional[int] = None,
    ) -> List[ReportImage]: ...

    def list_reports(self, **filters) -> Tuple[List[FraudReport], int]: ...

    def search_reports(
        self,
        query: str,
        fields: Sequence[IdentityField],
        *,
        status: ReportStatus = ReportStatus.APPROVED,
        limit: int = 50,
    ) -> List[FraudReport]: ...

    def count_reports(
        self, *, status: Optional[ReportStatus] = None, since: Optional[datetime] = None
    ) -> int: ...

    def count_users(self, *, status: Optional[SubjectStatus] = None) -> int: ...


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class DuplicateReportGuard:
    """Rejects a report naming an identity the same user already reported.

    Only populated fields take part; any single matching field is enough.
    """

    def __init__(self, store: ReportStore) -> None:
        self.store = store

    def check(
        self,
        user_id: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        social_id: Optional[str] = None,
    ) -> None:
        identities = {
            IdentityField.EMAIL: _clean(email),
            IdentityField.PHONE: _clean(phone),
            IdentityField.SOCIAL_ID: _clean(social_id),
        }
        populated = {key: value for key, value in identities.items() if value}
        if not populated:
            return
        if self.store.find_duplicate_report(user_id, populated) is not None:
            raise DuplicateReportError()


class ReportService:
    def __init__(
        self,
        store: ReportStore,
        files: FileService,
        *,
        default_page_size: int = 10,
        max_page_size: int = 100,
    ) -> None:
        self.store = store
        self.files = files
        self.guard = DuplicateReportGuard(store)
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def _paging(self, page: int, limit: Optional[int]) -> Tuple[int, int, int]:
        page = max(1, page)
        limit = min(max(1, limit or self.default_page_size), self.max_page_size)
        return page, limit, (page - 1) * limit

    # owner operations
    def submit(
        self,
        user_id: str,
        description: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        social_id: Optional[str] = None,
    ) -> FraudReport:
        email, phone, social_id = _clean(email), _clean(phone), _clean(social_id)
        if not (email or phone or social_id):
            raise ValidationError(
                "At least one of email, phone or social_id is required"
            )
        self.guard.check(user_id, email, phone, social_id)
        try:
            report = self.store.create_report(
                user_id, description.strip(), email=email, phone=phone, social_id=social_id
            )
        except DuplicateIdentity as exc:
            # lost the race against a concurrent submission
            raise DuplicateReportError(detail={"fields": exc.fields})
        logger.info("report_submitted", report_id=report.id, user_id=user_id)
        return report

    def _owned(self, user_id: str, report_id: int) -> FraudReport:
        report = self.store.get_report(report_id)
        if report is None or report.user_id != user_id:
            raise NotFoundError("Report not found")
        return report

    def get_own(self, user_id: str, report_id: int) -> FraudReport:
        return self._owned(user_id, report_id)

    def list_own(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: Optional[int] = None,
        status: Optional[ReportStatus] = None,
    ) -> Page:
        page, limit, offset = self._paging(page, limit)
        items, total = self.store.list_reports(
            user_id=user_id, status=status, offset=offset, limit=limit
        )
        return Page(items=items, page=page, limit=limit, total=total)

    def attach_images(
        self, user_id: str, report_id: int, uploads: Sequence[UploadedImage]
    ) -> List[ReportImage]:
        report = self._owned(user_id, report_id)
        if report.status is not ReportStatus.PENDING:
            raise ReportProcessedError("Cannot upload images to a processed report")
        if not uploads:
            raise ValidationError("No images provided")
        if len(report.images) + len(uploads) > self.files.max_files:
            raise ValidationError(
                f"A report can hold at most {self.files.max_files} images"
            )
        stored = self.files.save_images(uploads)
        try:
            # status and cap are checked again under the store's lock
            records = self.store.add_report_images(
                report_id,
                [(image.filename, image.path, image.size) for image in stored],
                required_status=ReportStatus.PENDING,
                max_images=self.files.max_files,
            )
        except ConstraintViolation as exc:
            self.files.delete_files(image.path for image in stored)
            if exc.constraint == "report_status":
                raise ReportProcessedError("Cannot upload images to a processed report")
            if exc.constraint == "report_image_limit":
                raise ValidationError(
                    f"A report can hold at most {self.files.max_files} images"
                )
            raise NotFoundError("Report not found")
        logger.info("report_images_attached", report_id=report_id, count=len(records))
        return records

    def update_own_status(
        self, user_id: str, report_id: int, status: ReportStatus
    ) -> FraudReport:
        if status not in OWNER_STATUSES:
            raise ValidationError("Status must be PENDING or REJECTED")
        report = self._owned(user_id, report_id)
        if report.status is ReportStatus.APPROVED:
            raise CannotUpdateApprovedError()
        updated = self.store.update_report(
            report_id, required_statuses=OWNER_STATUSES, status=status
        )
        if updated is None:
            # approved or deleted after we read it
            if self.store.get_report(report_id) is not None:
                raise CannotUpdateApprovedError()
            raise NotFoundError("Report not found")
        logger.info(
            "report_status_changed_by_owner",
            report_id=report_id,
            from_status=report.status.value,
            to_status=status.value,
        )
        return updated

    def delete_own(self, user_id: str, report_id: int) -> None:
        report = self._owned(user_id, report_id)
        if report.status is not ReportStatus.PENDING:
            raise ReportProcessedError()
        removed = self.store.delete_report(report_id, required_status=ReportStatus.PENDING)
        if removed is None:
            # status changed after we read it
            if self.store.get_report(report_id) is not None:
                raise ReportProcessedError()
            raise NotFoundError("Report not found")
        self.files.delete_files(image.path for image in removed)
        logger.info("report_deleted", report_id=report_id, user_id=user_id)

    # admin operations
    def list_reports(
        self,
        *,
        status: Optional[ReportStatus] = None,
        identity_type: Optional[IdentityField] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Page:
        page, limit, offset = self._paging(page, limit)
        try:
            items, total = self.store.list_reports(
                status=status,
                identity_field=identity_type,
                date_from=date_from,
                date_to=date_to,
                sort_by=sort_by,
                sort_order=sort_order,
                offset=offset,
                limit=limit,
            )
        except ValueError as exc:
            raise ValidationError(str(exc))
        return Page(items=items, page=page, limit=limit, total=total)

    def list_pending(self, *, page: int = 1, limit: Optional[int] = None) -> Page:
        """Pending queue, oldest first so nothing starves."""
        return self.list_reports(
            status=ReportStatus.PENDING, sort_by="created_at", sort_order="asc", page=page, limit=limit
        )

    def get_report(self, report_id: int) -> FraudReport:
        report = self.store.get_report(report_id)
        if report is None:
            raise NotFoundError("Report not found")
        return report

    def review(
        self,
        admin: Admin,
        report_id: int,
        status: ReportStatus,
        reason: Optional[str] = None,
    ) -> FraudReport:
        """Approve or reject a report; admins may override any earlier decision."""
        if status not in REVIEW_STATUSES:
            raise ValidationError("Status must be APPROVED or REJECTED")
        reason = _clean(reason)
        if status is ReportStatus.REJECTED and not reason:
            raise ValidationError(
                "Rejection reason is required", detail={"field": "reason"}
            )
        if reason and len(reason) > 500:
            raise ValidationError(
                "Rejection reason must be at most 500 characters", detail={"field": "reason"}
            )
        current = self.get_report(report_id)
        updated = self.store.update_report(
            report_id,
            status=status,
            reviewed_by=admin.id,
            reviewed_at=datetime.utcnow(),
            rejection_reason=reason if status is ReportStatus.REJECTED else None,
        )
        if updated is None:
            raise NotFoundError("Report not found")
        logger.info(
            "report_reviewed",
            report_id=report_id,
            admin_id=admin.id,
            from_status=current.status.value,
            to_status=status.value,
        )
        return updated

    # public operations
    def search_public(
        self, query: str, fields: Optional[Sequence[IdentityField]] = None
    ) -> List[FraudReport]:
        query = (query or "").strip()
        if not 2 <= len(query) <= 255:
            raise ValidationError(
                "Search query must be 2 to 255 characters", detail={"field": "query"}
            )
        chosen = list(fields) if fields else list(IdentityField)
        return self.store.search_reports(
            query, chosen, status=ReportStatus.APPROVED, limit=SEARCH_LIMIT
        )

    def recent_public(self, limit: int = 10) -> List[FraudReport]:
        limit = min(max(1, limit), RECENT_LIMIT_MAX)
        items, _ = self.store.list_reports(
            status=ReportStatus.APPROVED, sort_by="created_at", sort_order="desc", offset=0, limit=limit
        )
        return items

    def get_public(self, report_id: int) -> FraudReport:
        report = self.store.get_report(report_id)
        if report is None or report.status is not ReportStatus.APPROVED:
            raise NotFoundError("Report not found")
        return report

    def site_stats(self) -> dict:
        since = datetime.utcnow() - STATS_WINDOW
        return {
            "total_reports": self.store.count_reports(status=ReportStatus.APPROVED),
            "recent_reports": self.store.count_reports(
                status=ReportStatus.APPROVED, since=since
            ),
            "active_users": self.store.count_users(status=SubjectStatus.ACTIVE),
        }
