from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from fraudwatch.service.errors import ErrorKind
from fraudwatch.service.files import FileService
from fraudwatch.service.tokens import TokenPair
from fraudwatch.storage.models import (
    Admin,
    AdminRole,
    FraudReport,
    Page,
    ReportImage,
    ReportStatus,
    SubjectStatus,
    User,
)


def _utc_now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = _normalize_unicode(value).strip()
        return value or None
    return value


class Envelope(BaseModel):
    """Success body: ``{"success": true, "message", "data"}``."""

    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None
    timestamp: str = Field(default_factory=_utc_now_iso)


class ErrorEnvelope(BaseModel):
    """Error body: ``{"success": false, "error", "code", "details"?}``."""

    success: Literal[False] = False
    error: str
    code: str
    details: Optional[Any] = None
    timestamp: str = Field(default_factory=_utc_now_iso)

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        valid = {kind.value for kind in ErrorKind}
        if value not in valid:
            raise ValueError(f"Invalid error code '{value}'")
        return value


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9 ()\-.]{3,20}$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_picture_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if len(value) > 2048:
        raise ValueError("profile picture URL too long")
    if not value.startswith(("https://", "http://")):
        raise ValueError("profile picture must be an http(s) URL")
    return value


# requests
class GoogleAuthRequest(BaseModel):
    google_id: str = Field(..., min_length=1, max_length=255)
    email: str
    name: str = Field(..., min_length=2, max_length=100)
    profile_picture: Optional[str] = None
    id_token: Optional[str] = Field(default=None, max_length=4096)

    @field_validator("email")
    @classmethod
    def _validate_google_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("profile_picture", mode="before")
    @classmethod
    def _validate_picture(cls, value: Any) -> Optional[str]:
        return _validate_picture_url(_blank_to_none(value))


class AdminLoginRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class AdminCreateRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=128)
    role: AdminRole = AdminRole.MODERATOR

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        if not _USERNAME_PATTERN.match(value):
            raise ValueError(
                "username may contain letters, digits, dots, underscores and hyphens"
            )
        return value


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    profile_picture: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("profile_picture", mode="before")
    @classmethod
    def _validate_picture(cls, value: Any) -> Optional[str]:
        return _validate_picture_url(_blank_to_none(value))


class ReportCreateRequest(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, min_length=3, max_length=20)
    social_id: Optional[str] = Field(default=None, min_length=3, max_length=255)
    description: str = Field(..., min_length=10, max_length=2000)

    @field_validator("email", "phone", "social_id", "description", mode="before")
    @classmethod
    def _normalize_text(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("email")
    @classmethod
    def _validate_report_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _PHONE_PATTERN.match(value):
            raise ValueError("invalid phone number")
        return value

    @model_validator(mode="after")
    def _require_identity(self) -> "ReportCreateRequest":
        if not (self.email or self.phone or self.social_id):
            raise ValueError("at least one of email, phone or social_id is required")
        return self


class OwnerStatusRequest(BaseModel):
    status: ReportStatus

    @field_validator("status")
    @classmethod
    def _owner_statuses_only(cls, value: ReportStatus) -> ReportStatus:
        if value not in (ReportStatus.PENDING, ReportStatus.REJECTED):
            raise ValueError("status must be PENDING or REJECTED")
        return value


class ReviewRequest(BaseModel):
    status: ReportStatus
    reason: Optional[str] = Field(
        default=None,
        max_length=500,
        validation_alias=AliasChoices("reason", "rejectionReason", "rejection_reason"),
    )

    @field_validator("status")
    @classmethod
    def _review_statuses_only(cls, value: ReportStatus) -> ReportStatus:
        if value not in (ReportStatus.APPROVED, ReportStatus.REJECTED):
            raise ValueError("status must be APPROVED or REJECTED")
        return value

    @field_validator("reason", mode="before")
    @classmethod
    def _normalize_reason(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @model_validator(mode="after")
    def _require_reason_on_reject(self) -> "ReviewRequest":
        if self.status is ReportStatus.REJECTED and not self.reason:
            raise ValueError("reason is required when rejecting a report")
        return self


class UserStatusRequest(BaseModel):
    status: SubjectStatus


# responses
class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    profile_picture: Optional[str] = None
    status: SubjectStatus
    created_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            profile_picture=user.profile_picture,
            status=user.status,
            created_at=user.created_at,
        )


class AdminResponse(BaseModel):
    id: str
    username: str
    role: AdminRole
    status: SubjectStatus
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_model(cls, admin: Admin) -> "AdminResponse":
        return cls(
            id=admin.id,
            username=admin.username,
            role=admin.role,
            status=admin.status,
            last_login=admin.last_login,
            created_at=admin.created_at,
        )


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    user: Optional[UserResponse] = None
    admin: Optional[AdminResponse] = None

    @classmethod
    def from_result(cls, subject: User | Admin, tokens: TokenPair) -> "AuthResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
            user=UserResponse.from_model(subject) if isinstance(subject, User) else None,
            admin=AdminResponse.from_model(subject) if isinstance(subject, Admin) else None,
        )


class ReportImageResponse(BaseModel):
    id: int
    filename: str
    url: str
    size: int
    uploaded_at: datetime

    @classmethod
    def from_model(cls, image: ReportImage) -> "ReportImageResponse":
        return cls(
            id=image.id,
            filename=image.filename,
            url=FileService.file_url(image.filename),
            size=image.size,
            uploaded_at=image.uploaded_at,
        )


class ReportResponse(BaseModel):
    id: int
    user_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    social_id: Optional[str] = None
    description: str
    status: ReportStatus
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    images: List[ReportImageResponse] = Field(default_factory=list)

    @classmethod
    def from_model(cls, report: FraudReport) -> "ReportResponse":
        return cls(
            id=report.id,
            user_id=report.user_id,
            email=report.email,
            phone=report.phone,
            social_id=report.social_id,
            description=report.description,
            status=report.status,
            reviewed_by=report.reviewed_by,
            reviewed_at=report.reviewed_at,
            rejection_reason=report.rejection_reason,
            created_at=report.created_at,
            updated_at=report.updated_at,
            images=[ReportImageResponse.from_model(img) for img in report.images],
        )


class PublicReportResponse(BaseModel):
    """Approved report as shown to anonymous visitors; no reporter or review data."""

    model_config = ConfigDict(extra="forbid")

    id: int
    email: Optional[str] = None
    phone: Optional[str] = None
    social_id: Optional[str] = None
    description: str
    created_at: datetime
    image_count: int = 0

    @classmethod
    def from_model(cls, report: FraudReport) -> "PublicReportResponse":
        return cls(
            id=report.id,
            email=report.email,
            phone=report.phone,
            social_id=report.social_id,
            description=report.description,
            created_at=report.created_at,
            image_count=len(report.images),
        )


class PageResponse(BaseModel):
    items: List[Any]
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def from_page(cls, page: Page, view: Callable[[Any], BaseModel]) -> "PageResponse":
        return cls(
            items=[view(item) for item in page.items],
            page=page.page,
            limit=page.limit,
            total=page.total,
            pages=page.pages,
        )


class SiteStatsResponse(BaseModel):
    total_reports: int
    recent_reports: int
    active_users: int


class UserStatsResponse(BaseModel):
    total_users: int
    active_users: int
    suspended_users: int
    recent_users: List[UserResponse]

    @classmethod
    def from_stats(cls, stats: dict) -> "UserStatsResponse":
        return cls(
            total_users=stats["total_users"],
            active_users=stats["active_users"],
            suspended_users=stats["suspended_users"],
            recent_users=[UserResponse.from_model(user) for user in stats["recent_users"]],
        )


class UserActivityResponse(BaseModel):
    user_id: str
    name: str
    email: str
    status: SubjectStatus
    created_at: datetime
    report_count: int

    @classmethod
    def from_activity(cls, activity: dict) -> "UserActivityResponse":
        user: User = activity["user"]
        return cls(
            user_id=user.id,
            name=user.name,
            email=user.email,
            status=user.status,
            created_at=user.created_at,
            report_count=activity["report_count"],
        )


class LanguageContentResponse(BaseModel):
    language: str
    content: Dict[str, str]


class ContentStatsResponse(BaseModel):
    total_content: int
    content_by_language: Dict[str, int]
