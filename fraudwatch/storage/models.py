from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union


class SubjectKind(str, Enum):
    """Which table a token subject lives in."""

    USER = "user"
    ADMIN = "admin"


class SubjectStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class AdminRole(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    MODERATOR = "MODERATOR"


class ReportStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class IdentityField(str, Enum):
    """Identity columns a report can name; values double as column names."""

    EMAIL = "email"
    PHONE = "phone"
    SOCIAL_ID = "social_id"


@dataclass
class User:
    id: str
    email: str
    name: str
    google_id: Optional[str] = None
    profile_picture: Optional[str] = None
    status: SubjectStatus = SubjectStatus.ACTIVE
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    kind = SubjectKind.USER

    @property
    def is_active(self) -> bool:
        return self.status == SubjectStatus.ACTIVE


@dataclass
class Admin:
    id: str
    username: str
    password_hash: str
    role: AdminRole = AdminRole.MODERATOR
    status: SubjectStatus = SubjectStatus.ACTIVE
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    kind = SubjectKind.ADMIN

    @property
    def is_active(self) -> bool:
        return self.status == SubjectStatus.ACTIVE

    @property
    def is_super_admin(self) -> bool:
        return self.role is AdminRole.SUPER_ADMIN


Subject = Union[User, Admin]


@dataclass
class RefreshToken:
    token: str
    subject_id: str
    subject_kind: SubjectKind
    expires_at: datetime
    created_at: datetime = field(default_factory=datetime.utcnow)
    seq: int = 0

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or datetime.utcnow())


@dataclass
class ReportImage:
    id: int
    report_id: int
    filename: str
    path: str
    size: int
    uploaded_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class FraudReport:
    id: int
    user_id: str
    description: str
    email: Optional[str] = None
    phone: Optional[str] = None
    social_id: Optional[str] = None
    status: ReportStatus = ReportStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    images: List[ReportImage] = field(default_factory=list)

    def identity_values(self) -> dict[IdentityField, str]:
        """Populated identity fields only."""
        values = {
            IdentityField.EMAIL: self.email,
            IdentityField.PHONE: self.phone,
            IdentityField.SOCIAL_ID: self.social_id,
        }
        return {key: value for key, value in values.items() if value}


@dataclass
class LanguageContent:
    """One translated UI string, unique per (content_key, language)."""

    id: int
    content_key: str
    language: str
    content_value: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Page:
    items: list
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit
