from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# Whitelisted ORDER BY columns; never interpolate caller input directly
_REPORT_SORT_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "status": "status",
}

_IDENTITY_CONSTRAINTS = {
    "fraud_report_user_email_uq": IdentityField.EMAIL,
    "fraud_report_user_phone_uq": IdentityField.PHONE,
    "fraud_report_user_social_uq": IdentityField.SOCIAL_ID,
}


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresStore:
    """Postgres-backed store using a psycopg connection pool."""

    def __init__(self, dsn: str, data_root: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.data_root = Path(data_root)
        self.data_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Apply the idempotent schema file."""
        with self._connect() as conn:
            conn.execute(_SCHEMA_PATH.read_text())
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            google_id=row.get("google_id"),
            profile_picture=row.get("profile_picture"),
            status=SubjectStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_admin(row: Dict[str, Any]) -> Admin:
        return Admin(
            id=row["id"],
            username=row["username"],
            password_hash=row["password_hash"],
            role=AdminRole(row["role"]),
            status=SubjectStatus(row["status"]),
            last_login=row.get("last_login"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            subject_id=row["subject_id"],
            subject_kind=SubjectKind(row["subject_kind"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            seq=row["seq"],
        )

    @staticmethod
    def _row_to_image(row: Dict[str, Any]) -> ReportImage:
        return ReportImage(
            id=row["id"],
            report_id=row["report_id"],
            filename=row["filename"],
            path=row["path"],
            size=row["size"],
            uploaded_at=row["uploaded_at"],
        )

    @staticmethod
    def _row_to_report(row: Dict[str, Any], images: Optional[List[ReportImage]] = None) -> FraudReport:
        return FraudReport(
            id=row["id"],
            user_id=row["user_id"],
            description=row["description"],
            email=row.get("email"),
            phone=row.get("phone"),
            social_id=row.get("social_id"),
            status=ReportStatus(row["status"]),
            reviewed_by=row.get("reviewed_by"),
            reviewed_at=row.get("reviewed_at"),
            rejection_reason=row.get("rejection_reason"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            images=images or [],
        )

    def _attach_images(self, conn, rows: List[Dict[str, Any]]) -> List[FraudReport]:
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        image_rows = conn.execute(
            "SELECT * FROM report_image WHERE report_id = ANY(%s) ORDER BY id",
            (ids,),
        ).fetchall()
        by_report: Dict[int, List[ReportImage]] = {}
        for image_row in image_rows:
            by_report.setdefault(image_row["report_id"], []).append(
                self._row_to_image(image_row)
            )
        return [self._row_to_report(row, by_report.get(row["id"])) for row in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, google_id, name, email, profile_picture, status)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), google_id, name, email, profile_picture, status.value),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "google_id" if "google" in (exc.diag.constraint_name or "") else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE google_id = %s", (google_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        allowed = ("name", "profile_picture", "google_id", "status")
        unknown = set(changes) - set(allowed)
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        columns = [key for key in allowed if key in changes]
        values = [
            changes[key].value if isinstance(changes[key], SubjectStatus) else changes[key]
            for key in columns
        ]
        assignments = ", ".join(f"{col} = %s" for col in columns + ["updated_at"])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    (*values, datetime.utcnow(), user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "google account already linked", {"field": "google_id"}
            )
        return self._row_to_user(row) if row else None

    def list_users(
        self,
        *,
        search: Optional[str] = None,
        status: Optional[SubjectStatus] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[User], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if search:
            pattern = f"%{_escape_like(search)}%"
            clauses.append("(name ILIKE %s OR email ILIKE %s)")
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS n FROM app_user {where}", params
            ).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM app_user {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_user(row) for row in rows], total

    def count_users(self, *, status: Optional[SubjectStatus] = None) -> int:
        with self._connect() as conn:
            if status is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM app_user").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM app_user WHERE status = %s", (status.value,)
                ).fetchone()
        return row["n"]

    def delete_user(self, user_id: str) -> Optional[List[ReportImage]]:
        with self._connect() as conn:
            image_rows = conn.execute(
                """
                SELECT i.* FROM report_image i
                JOIN fraud_report r ON r.id = i.report_id
                WHERE r.user_id = %s
                """,
                (user_id,),
            ).fetchall()
            conn.execute("DELETE FROM refresh_token WHERE subject_id = %s", (user_id,))
            # fraud_report and report_image rows go with ON DELETE CASCADE
            deleted = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
            if not deleted:
                conn.rollback()
                return None
        return [self._row_to_image(row) for row in image_rows]

    # admins
    def create_admin(
        self,
        username: str,
        password_hash: str,
        *,
        role: AdminRole = AdminRole.MODERATOR,
    ) -> Admin:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin (id, username, password_hash, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), username, password_hash, role.value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return self._row_to_admin(row)

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM admin WHERE id = %s", (admin_id,)).fetchone()
        return self._row_to_admin(row) if row else None

    def get_admin_by_username(self, username: str) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_admin(row) if row else None

    def update_admin(self, admin_id: str, **changes: Any) -> Optional[Admin]:
        allowed = ("password_hash", "role", "status", "last_login")
        unknown = set(changes) - set(allowed)
        if unknown:
            raise ValueError(f"cannot update admin fields: {sorted(unknown)}")
        columns = [key for key in allowed if key in changes]
        values = [
            changes[key].value if isinstance(changes[key], (AdminRole, SubjectStatus)) else changes[key]
            for key in columns
        ]
        assignments = ", ".join(f"{col} = %s" for col in columns + ["updated_at"])
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE admin SET {assignments} WHERE id = %s RETURNING *",
                (*values, datetime.utcnow(), admin_id),
            ).fetchone()
        return self._row_to_admin(row) if row else None

    def list_admins(self) -> List[Admin]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM admin ORDER BY created_at").fetchall()
        return [self._row_to_admin(row) for row in rows]

    # refresh tokens
    def create_refresh_token(
        self,
        token: str,
        subject_id: str,
        subject_kind: SubjectKind,
        expires_at: datetime,
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (token, subject_id, subject_kind, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token, subject_id, subject_kind.value, expires_at, datetime.utcnow()),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._row_to_token(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        """Compare-and-delete: only one concurrent caller gets the row back."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token = %s RETURNING *", (token,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def delete_refresh_token(self, token: str) -> bool:
        return self.consume_refresh_token(token) is not None

    def delete_subject_refresh_tokens(self, subject_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE subject_id = %s", (subject_id,)
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s",
                (now or datetime.utcnow(),),
            )
            return cur.rowcount

    def prune_refresh_tokens(self, subject_id: str, keep: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE subject_id = %s AND seq NOT IN (
                    SELECT seq FROM refresh_token
                    WHERE subject_id = %s
                    ORDER BY created_at DESC, seq DESC
                    LIMIT %s
                )
                """,
                (subject_id, subject_id, max(keep, 0)),
            )
            return cur.rowcount

    def count_refresh_tokens(self, subject_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM refresh_token WHERE subject_id = %s",
                (subject_id,),
            ).fetchone()
        return row["n"]

    # reports
    def find_duplicate_report(
        self, user_id: str, identities: Dict[IdentityField, str]
    ) -> Optional[FraudReport]:
        populated = {key: value for key, value in identities.items() if value}
        if not populated:
            return None
        ors = " OR ".join(f"{key.value} = %s" for key in populated)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM fraud_report WHERE user_id = %s AND ({ors}) LIMIT 1",
                (user_id, *populated.values()),
            ).fetchone()
        return self._row_to_report(row) if row else None

    def create_report(
        self,
        user_id: str,
        description: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        social_id: Optional[str] = None,
    ) -> FraudReport:
        now = datetime.utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO fraud_report (user_id, email, phone, social_id, description, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, phone, social_id, description, ReportStatus.PENDING.value, now, now),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _IDENTITY_CONSTRAINTS.get(exc.diag.constraint_name or "")
            raise DuplicateIdentity(user_id, [field.value] if field else [])
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._row_to_report(row)

    def get_report(self, report_id: int) -> Optional[FraudReport]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM fraud_report WHERE id = %s", (report_id,)
            ).fetchone()
            if not row:
                return None
            return self._attach_images(conn, [row])[0]

    def update_report(
        self,
        report_id: int,
        *,
        required_statuses: Optional[Sequence[ReportStatus]] = None,
        **changes: Any,
    ) -> Optional[FraudReport]:
        allowed = ("status", "reviewed_by", "reviewed_at", "rejection_reason")
        unknown = set(changes) - set(allowed)
        if unknown:
            raise ValueError(f"cannot update report fields: {sorted(unknown)}")
        columns = [key for key in allowed if key in changes]
        values = [
            changes[key].value if isinstance(changes[key], ReportStatus) else changes[key]
            for key in columns
        ]
        assignments = ", ".join(f"{col} = %s" for col in columns + ["updated_at"])
        condition = "id = %s"
        params: List[Any] = [*values, datetime.utcnow(), report_id]
        if required_statuses is not None:
            condition += " AND status = ANY(%s)"
            params.append([status.value for status in required_statuses])
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE fraud_report SET {assignments} WHERE {condition} RETURNING *",
                params,
            ).fetchone()
            if not row:
                return None
            return self._attach_images(conn, [row])[0]

    def delete_report(
        self, report_id: int, *, required_status: Optional[ReportStatus] = None
    ) -> Optional[List[ReportImage]]:
        with self._connect() as conn:
            image_rows = conn.execute(
                "SELECT * FROM report_image WHERE report_id = %s ORDER BY id", (report_id,)
            ).fetchall()
            if required_status is None:
                deleted = conn.execute(
                    "DELETE FROM fraud_report WHERE id = %s RETURNING id", (report_id,)
                ).fetchone()
            else:
                deleted = conn.execute(
                    "DELETE FROM fraud_report WHERE id = %s AND status = %s RETURNING id",
                    (report_id, required_status.value),
                ).fetchone()
            if not deleted:
                return None
        return [self._row_to_image(row) for row in image_rows]

    def add_report_images(
        self,
        report_id: int,
        images: Sequence[Tuple[str, str, int]],
        *,
        required_status: Optional[ReportStatus] = None,
        max_images: Optional[int] = None,
    ) -> List[ReportImage]:
        """Attach ``(filename, path, size)`` records in one transaction.

        The report row is locked so concurrent uploads see each other's
        images when the cap is checked.
        """
        now = datetime.utcnow()
        with self._connect() as conn:
            report = conn.execute(
                "SELECT status FROM fraud_report WHERE id = %s FOR UPDATE", (report_id,)
            ).fetchone()
            if not report:
                raise ConstraintViolation(
                    "report does not exist", {"report_id": report_id}, constraint="report_exists"
                )
            if required_status is not None and report["status"] != required_status.value:
                raise ConstraintViolation(
                    "report status changed",
                    {"report_id": report_id, "status": report["status"]},
                    constraint="report_status",
                )
            if max_images is not None:
                existing = conn.execute(
                    "SELECT COUNT(*) AS n FROM report_image WHERE report_id = %s", (report_id,)
                ).fetchone()["n"]
                if existing + len(images) > max_images:
                    raise ConstraintViolation(
                        "too many images for report",
                        {"report_id": report_id, "max_images": max_images},
                        constraint="report_image_limit",
                    )
            rows = [
                conn.execute(
                    """
                    INSERT INTO report_image (report_id, filename, path, size, uploaded_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (report_id, filename, path, size, now),
                ).fetchone()
                for filename, path, size in images
            ]
        return [self._row_to_image(row) for row in rows]

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
        column = _REPORT_SORT_COLUMNS.get(sort_by)
        if column is None:
            raise ValueError(f"unsupported sort field: {sort_by}")
        direction = "ASC" if sort_order == "asc" else "DESC"
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if identity_field is not None:
            clauses.append(f"{identity_field.value} IS NOT NULL")
        if date_from is not None:
            clauses.append("created_at >= %s")
            params.append(date_from)
        if date_to is not None:
            clauses.append("created_at <= %s")
            params.append(date_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS n FROM fraud_report {where}", params
            ).fetchone()["n"]
            rows = conn.execute(
                f"SELECT * FROM fraud_report {where} ORDER BY {column} {direction}, id {direction} LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
            return self._attach_images(conn, rows), total

    def search_reports(
        self,
        query: str,
        fields: Sequence[IdentityField],
        *,
        status: ReportStatus = ReportStatus.APPROVED,
        limit: int = 50,
    ) -> List[FraudReport]:
        pattern = f"%{_escape_like(query)}%"
        columns = ["description"] + [f.value for f in fields]
        ors = " OR ".join(f"{col} ILIKE %s" for col in columns)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM fraud_report
                WHERE status = %s AND ({ors})
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (status.value, *([pattern] * len(columns)), limit),
            ).fetchall()
            return self._attach_images(conn, rows)

    def count_reports(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[ReportStatus] = None,
        since: Optional[datetime] = None,
    ) -> int:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM fraud_report {where}", params
            ).fetchone()
        return row["n"]

    # language content
    @staticmethod
    def _row_to_content(row: Dict[str, Any]) -> LanguageContent:
        return LanguageContent(
            id=row["id"],
            content_key=row["content_key"],
            language=row["language"],
            content_value=row["content_value"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def upsert_content(self, content_key: str, language: str, content_value: str) -> LanguageContent:
        now = datetime.utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO language_content (content_key, language, content_value, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (content_key, language)
                DO UPDATE SET content_value = EXCLUDED.content_value, updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (content_key, language, content_value, now, now),
            ).fetchone()
        return self._row_to_content(row)

    def delete_content(self, content_key: str, language: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM language_content WHERE content_key = %s AND language = %s RETURNING id",
                (content_key, language),
            ).fetchone()
        return row is not None

    def get_language_content(self, language: str) -> Dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT content_key, content_value FROM language_content
                WHERE language = %s ORDER BY content_key
                """,
                (language,),
            ).fetchall()
        return {row["content_key"]: row["content_value"] for row in rows}

    def list_languages(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT language FROM language_content ORDER BY language"
            ).fetchall()
        return [row["language"] for row in rows]

    def list_content_keys(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT content_key FROM language_content ORDER BY content_key"
            ).fetchall()
        return [row["content_key"] for row in rows]

    def count_content_by_language(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT language, COUNT(*) AS n FROM language_content GROUP BY language"
            ).fetchall()
        return {row["language"]: row["n"] for row in rows}
