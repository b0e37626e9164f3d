from __future__ import annotations

import itertools
import json
import threading
import uuid
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from fraudwatch.logging import get_logger
from fraudwatch.storage.errors import ConstraintViolation, DuplicateIdentity
from fraudwatch.storage.models import (
    Admin,
    AdminRole,
    FraudReport,
    IdentityField,
    LanguageContent,
    RefreshToken,
    ReportImage,
    ReportStatus,
    SubjectKind,
    SubjectStatus,
    User,
)

_REPORT_SORT_FIELDS = {"created_at", "updated_at", "status"}


class MemoryStore:
    """In-memory backing store for development and tests.

    State is mirrored to ``<data_root>/state/memory_store.json`` after every
    mutation so a dev server keeps its data across restarts.
    """

    def __init__(self, data_root: str = "/tmp/fraudwatch", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.admins: Dict[str, Admin] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.reports: Dict[int, FraudReport] = {}
        self.contents: Dict[Tuple[str, str], LanguageContent] = {}
        self._report_seq = itertools.count(1)
        self._image_seq = itertools.count(1)
        self._token_seq = itertools.count(1)
        self._content_seq = itertools.count(1)
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self.data_root = Path(data_root)
        self.data_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        if persist:
            self._load_state()

    def verify_connection(self) -> None:
        """Memory store is always reachable."""

    def close(self) -> None:
        """Nothing to release."""

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        google_id: Optional[str] = None,
        profile_picture: Optional[str] = None,
        status: SubjectStatus = SubjectStatus.ACTIVE,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if google_id and any(
                existing.google_id == google_id for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "google account already linked", {"field": "google_id"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                google_id=google_id,
                profile_picture=profile_picture,
                status=status,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.google_id == google_id), None
            )
            return replace(user) if user else None

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        allowed = {"name", "profile_picture", "google_id", "status"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            google_id = changes.get("google_id")
            if google_id and any(
                other.google_id == google_id and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation(
                    "google account already linked", {"field": "google_id"}
                )
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = datetime.utcnow()
            self._persist_state()
            return replace(user)

    def list_users(
        self,
        *,
        search: Optional[str] = None,
        status: Optional[SubjectStatus] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[User], int]:
        needle = search.lower() if search else None
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if (status is None or u.status == status)
                and (
                    needle is None
                    or needle in u.name.lower()
                    or needle in u.email.lower()
                )
            ]
            matches.sort(key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in matches[offset : offset + limit]], len(matches)

    def count_users(self, *, status: Optional[SubjectStatus] = None) -> int:
        with self._data_lock:
            return sum(
                1 for u in self.users.values() if status is None or u.status == status
            )

    def delete_user(self, user_id: str) -> Optional[List[ReportImage]]:
        """Remove a user with their reports and refresh tokens.

        Returns the image records that belonged to the removed reports so the
        caller can clean up files, or None when the user does not exist.
        """
        with self._data_lock:
            if user_id not in self.users:
                return None
            self.users.pop(user_id)
            removed_images: List[ReportImage] = []
            for report_id, report in list(self.reports.items()):
                if report.user_id == user_id:
                    removed_images.extend(report.images)
                    self.reports.pop(report_id)
            self._drop_subject_tokens(user_id)
            self._persist_state()
            return removed_images

    # admins
    def create_admin(
        self,
        username: str,
        password_hash: str,
        *,
        role: AdminRole = AdminRole.MODERATOR,
    ) -> Admin:
        with self._data_lock:
            if any(a.username == username for a in self.admins.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            admin = Admin(
                id=str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                role=role,
            )
            self.admins[admin.id] = admin
            self._persist_state()
            return replace(admin)

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        with self._data_lock:
            admin = self.admins.get(admin_id)
            return replace(admin) if admin else None

    def get_admin_by_username(self, username: str) -> Optional[Admin]:
        with self._data_lock:
            admin = next(
                (a for a in self.admins.values() if a.username == username), None
            )
            return replace(admin) if admin else None

    def update_admin(self, admin_id: str, **changes: Any) -> Optional[Admin]:
        allowed = {"password_hash", "role", "status", "last_login"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"cannot update admin fields: {sorted(unknown)}")
        with self._data_lock:
            admin = self.admins.get(admin_id)
            if not admin:
                return None
            for key, value in changes.items():
                setattr(admin, key, value)
            admin.updated_at = datetime.utcnow()
            self._persist_state()
            return replace(admin)

    def list_admins(self) -> List[Admin]:
        with self._data_lock:
            return [
                replace(a)
                for a in sorted(self.admins.values(), key=lambda a: a.created_at)
            ]

    # refresh tokens
    def create_refresh_token(
        self,
        token: str,
        subject_id: str,
        subject_kind: SubjectKind,
        expires_at: datetime,
    ) -> RefreshToken:
        with self._data_lock:
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken(
                token=token,
                subject_id=subject_id,
                subject_kind=subject_kind,
                expires_at=expires_at,
                seq=next(self._token_seq),
            )
            self.refresh_tokens[token] = record
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        """Delete and return the row in one step; a second caller gets None."""
        with self._data_lock:
            record = self.refresh_tokens.pop(token, None)
            if record:
                self._persist_state()
            return record

    def delete_refresh_token(self, token: str) -> bool:
        return self.consume_refresh_token(token) is not None

    def delete_subject_refresh_tokens(self, subject_id: str) -> int:
        with self._data_lock:
            removed = self._drop_subject_tokens(subject_id)
            if removed:
                self._persist_state()
            return removed

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or datetime.utcnow()
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.expires_at <= cutoff]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def prune_refresh_tokens(self, subject_id: str, keep: int) -> int:
        with self._data_lock:
            owned = sorted(
                (rec for rec in self.refresh_tokens.values() if rec.subject_id == subject_id),
                key=lambda rec: (rec.created_at, rec.seq),
                reverse=True,
            )
            excess = owned[max(keep, 0):]
            for rec in excess:
                self.refresh_tokens.pop(rec.token, None)
            if excess:
                self._persist_state()
            return len(excess)

    def count_refresh_tokens(self, subject_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for rec in self.refresh_tokens.values() if rec.subject_id == subject_id
            )

    def _drop_subject_tokens(self, subject_id: str) -> int:
        stale = [t for t, rec in self.refresh_tokens.items() if rec.subject_id == subject_id]
        for token in stale:
            self.refresh_tokens.pop(token, None)
        return len(stale)

    # reports
    def find_duplicate_report(
        self, user_id: str, identities: Dict[IdentityField, str]
    ) -> Optional[FraudReport]:
        with self._data_lock:
            hit = self._find_duplicate(user_id, identities)
            return self._copy_report(hit) if hit else None

    def _find_duplicate(
        self, user_id: str, identities: Dict[IdentityField, str]
    ) -> Optional[FraudReport]:
        populated = {key: value for key, value in identities.items() if value}
        if not populated:
            return None
        for report in self.reports.values():
            if report.user_id != user_id:
                continue
            if any(getattr(report, key.value) == value for key, value in populated.items()):
                return report
        return None

    def create_report(
        self,
        user_id: str,
        description: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        social_id: Optional[str] = None,
    ) -> FraudReport:
        identities = {
            IdentityField.EMAIL: email,
            IdentityField.PHONE: phone,
            IdentityField.SOCIAL_ID: social_id,
        }
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            duplicate = self._find_duplicate(user_id, identities)
            if duplicate:
                clashing = [
                    key.value
                    for key, value in identities.items()
                    if value and getattr(duplicate, key.value) == value
                ]
                raise DuplicateIdentity(user_id, clashing)
            report = FraudReport(
                id=next(self._report_seq),
                user_id=user_id,
                description=description,
                email=email,
                phone=phone,
                social_id=social_id,
            )
            self.reports[report.id] = report
            self._persist_state()
            return self._copy_report(report)

    def get_report(self, report_id: int) -> Optional[FraudReport]:
        with self._data_lock:
            report = self.reports.get(report_id)
            return self._copy_report(report) if report else None

    def update_report(
        self,
        report_id: int,
        *,
        required_statuses: Optional[Sequence[ReportStatus]] = None,
        **changes: Any,
    ) -> Optional[FraudReport]:
        """Apply ``changes``; with ``required_statuses`` only while the report is in one of them."""
        allowed = {"status", "reviewed_by", "reviewed_at", "rejection_reason"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"cannot update report fields: {sorted(unknown)}")
        with self._data_lock:
            report = self.reports.get(report_id)
            if not report:
                return None
            if required_statuses is not None and report.status not in required_statuses:
                return None
            for key, value in changes.items():
                setattr(report, key, value)
            report.updated_at = datetime.utcnow()
            self._persist_state()
            return self._copy_report(report)

    def delete_report(
        self, report_id: int, *, required_status: Optional[ReportStatus] = None
    ) -> Optional[List[ReportImage]]:
        """Delete a report and its images.

        With ``required_status`` the row is only removed while it still has
        that status. Returns the removed images, or None when nothing matched.
        """
        with self._data_lock:
            report = self.reports.get(report_id)
            if not report:
                return None
            if required_status is not None and report.status != required_status:
                return None
            self.reports.pop(report_id)
            self._persist_state()
            return list(report.images)

    def add_report_images(
        self,
        report_id: int,
        images: Sequence[Tuple[str, str, int]],
        *,
        required_status: Optional[ReportStatus] = None,
        max_images: Optional[int] = None,
    ) -> List[ReportImage]:
        """Attach ``(filename, path, size)`` records all at once or not at all."""
        with self._data_lock:
            report = self.reports.get(report_id)
            if not report:
                raise ConstraintViolation(
                    "report does not exist", {"report_id": report_id}, constraint="report_exists"
                )
            if required_status is not None and report.status != required_status:
                raise ConstraintViolation(
                    "report status changed",
                    {"report_id": report_id, "status": report.status.value},
                    constraint="report_status",
                )
            if max_images is not None and len(report.images) + len(images) > max_images:
                raise ConstraintViolation(
                    "too many images for report",
                    {"report_id": report_id, "max_images": max_images},
                    constraint="report_image_limit",
                )
            added = [
                ReportImage(
                    id=next(self._image_seq),
                    report_id=report_id,
                    filename=filename,
                    path=path,
                    size=size,
                )
                for filename, path, size in images
            ]
            report.images.extend(added)
            self._persist_state()
            return [replace(image) for image in added]

    def list_reports(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[ReportStatus] = None,
        identity_field: Optional[IdentityField] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[FraudReport], int]:
        if sort_by not in _REPORT_SORT_FIELDS:
            raise ValueError(f"unsupported sort field: {sort_by}")
        with self._data_lock:
            matches = [
                r
                for r in self.reports.values()
                if (user_id is None or r.user_id == user_id)
                and (status is None or r.status == status)
                and (identity_field is None or getattr(r, identity_field.value))
                and (date_from is None or r.created_at >= date_from)
                and (date_to is None or r.created_at <= date_to)
            ]
            matches.sort(
                key=lambda r: (self._sort_value(r, sort_by), r.id),
                reverse=sort_order == "desc",
            )
            page = matches[offset : offset + limit]
            return [self._copy_report(r) for r in page], len(matches)

    def search_reports(
        self,
        query: str,
        fields: Sequence[IdentityField],
        *,
        status: ReportStatus = ReportStatus.APPROVED,
        limit: int = 50,
    ) -> List[FraudReport]:
        needle = query.lower()
        with self._data_lock:
            matches = []
            for report in self.reports.values():
                if report.status != status:
                    continue
                haystacks: Iterable[Optional[str]] = [report.description] + [
                    getattr(report, f.value) for f in fields
                ]
                if any(h and needle in h.lower() for h in haystacks):
                    matches.append(report)
            matches.sort(key=lambda r: (r.created_at, r.id), reverse=True)
            return [self._copy_report(r) for r in matches[:limit]]

    def count_reports(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[ReportStatus] = None,
        since: Optional[datetime] = None,
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for r in self.reports.values()
                if (user_id is None or r.user_id == user_id)
                and (status is None or r.status == status)
                and (since is None or r.created_at >= since)
            )

    # language content
    def upsert_content(self, content_key: str, language: str, content_value: str) -> LanguageContent:
        with self._data_lock:
            existing = self.contents.get((content_key, language))
            if existing:
                existing.content_value = content_value
                existing.updated_at = datetime.utcnow()
                content = existing
            else:
                content = LanguageContent(
                    id=next(self._content_seq),
                    content_key=content_key,
                    language=language,
                    content_value=content_value,
                )
                self.contents[(content_key, language)] = content
            self._persist_state()
            return replace(content)

    def delete_content(self, content_key: str, language: str) -> bool:
        with self._data_lock:
            removed = self.contents.pop((content_key, language), None)
            if removed:
                self._persist_state()
            return removed is not None

    def get_language_content(self, language: str) -> Dict[str, str]:
        with self._data_lock:
            return {
                c.content_key: c.content_value
                for c in sorted(self.contents.values(), key=lambda c: c.content_key)
                if c.language == language
            }

    def list_languages(self) -> List[str]:
        with self._data_lock:
            return sorted({c.language for c in self.contents.values()})

    def list_content_keys(self) -> List[str]:
        with self._data_lock:
            return sorted({c.content_key for c in self.contents.values()})

    def count_content_by_language(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._data_lock:
            for c in self.contents.values():
                counts[c.language] = counts.get(c.language, 0) + 1
        return counts

    @staticmethod
    def _sort_value(report: FraudReport, sort_by: str) -> Any:
        value = getattr(report, sort_by)
        return value.value if isinstance(value, ReportStatus) else value

    @staticmethod
    def _copy_report(report: FraudReport) -> FraudReport:
        return replace(report, images=[replace(img) for img in report.images])

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.data_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _to_json(obj: Any) -> dict:
        payload = asdict(obj)
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
            elif hasattr(value, "value"):
                payload[key] = value.value
        return payload

    @staticmethod
    def _from_json(cls: type, raw: dict, enums: Dict[str, type]) -> Any:
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            if key not in known:
                continue
            if key in enums and value is not None:
                value = enums[key](value)
            elif isinstance(value, str) and key.endswith(("_at", "_login")):
                value = datetime.fromisoformat(value)
            values[key] = value
        return cls(**values)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        reports = []
        for report in self.reports.values():
            entry = self._to_json(replace(report, images=[]))
            entry["images"] = [self._to_json(img) for img in report.images]
            reports.append(entry)
        state = {
            "users": [self._to_json(u) for u in self.users.values()],
            "admins": [self._to_json(a) for a in self.admins.values()],
            "refresh_tokens": [self._to_json(t) for t in self.refresh_tokens.values()],
            "reports": reports,
            "language_content": [self._to_json(c) for c in self.contents.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        self.users = {
            u["id"]: self._from_json(User, u, {"status": SubjectStatus})
            for u in data.get("users", [])
        }
        self.admins = {
            a["id"]: self._from_json(
                Admin, a, {"status": SubjectStatus, "role": AdminRole}
            )
            for a in data.get("admins", [])
        }
        self.refresh_tokens = {
            t["token"]: self._from_json(RefreshToken, t, {"subject_kind": SubjectKind})
            for t in data.get("refresh_tokens", [])
        }
        self.reports = {}
        for raw in data.get("reports", []):
            images = [
                self._from_json(ReportImage, img, {}) for img in raw.get("images", [])
            ]
            report = self._from_json(
                FraudReport, {**raw, "images": []}, {"status": ReportStatus}
            )
            report.images = images
            self.reports[report.id] = report
        max_report = max(self.reports, default=0)
        max_image = max(
            (img.id for r in self.reports.values() for img in r.images), default=0
        )
        self.contents = {}
        for raw in data.get("language_content", []):
            content = self._from_json(LanguageContent, raw, {})
            self.contents[(content.content_key, content.language)] = content
        max_token = max((t.seq for t in self.refresh_tokens.values()), default=0)
        max_content = max((c.id for c in self.contents.values()), default=0)
        self._report_seq = itertools.count(max_report + 1)
        self._image_seq = itertools.count(max_image + 1)
        self._token_seq = itertools.count(max_token + 1)
        self._content_seq = itertools.count(max_content + 1)
        return True
