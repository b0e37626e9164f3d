from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from fraudwatch.logging import get_logger
from fraudwatch.service.errors import (
    AccountSuspendedError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    ServiceError,
    TokenInvalidError,
    ValidationError,
)
from fraudwatch.service.session import SessionValidator
from fraudwatch.service.token_store import TokenStore
from fraudwatch.service.tokens import TokenIssuer, TokenPair, subject_claims
from fraudwatch.storage.errors import ConstraintViolation
from fraudwatch.storage.models import Admin, AdminRole, Subject, SubjectKind, SubjectStatus, User

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        google_id: Optional[str] = None,
        profile_picture: Optional[str] = None,
        status: SubjectStatus = SubjectStatus.ACTIVE,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes) -> Optional[User]: ...

    def create_admin(
        self, username: str, password_hash: str, *, role: AdminRole = AdminRole.MODERATOR
    ) -> Admin: ...

    def get_admin(self, admin_id: str) -> Optional[Admin]: ...

    def get_admin_by_username(self, username: str) -> Optional[Admin]: ...

    def update_admin(self, admin_id: str, **changes) -> Optional[Admin]: ...

    def list_admins(self) -> List[Admin]: ...


@dataclass
class AuthResult:
    subject: Subject
    tokens: TokenPair


class AuthService:
    """Google sign-in for users, password login for admins, and refresh/logout."""

    def __init__(
        self,
        store: AuthStore,
        issuer: TokenIssuer,
        token_store: TokenStore,
        validator: SessionValidator,
        *,
        google_client_id: Optional[str] = None,
        http_timeout: float = 10.0,
    ) -> None:
        self.store: AuthStore = store
        self.issuer = issuer
        self.token_store = token_store
        self.validator = validator
        self.google_client_id = google_client_id
        self.http_timeout = http_timeout
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the username is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def _issue_for(self, subject: Subject) -> TokenPair:
        pair = self.issuer.issue_pair(subject_claims(subject))
        self.token_store.issue(
            subject.id, pair.refresh_token, pair.refresh_expires_at, subject.kind
        )
        pruned = self.token_store.prune_excess(subject.id)
        if pruned:
            self.logger.info(
                "refresh_tokens_pruned", subject_id=subject.id, count=pruned
            )
        return pair

    # users
    async def google_login(
        self,
        *,
        google_id: str,
        email: str,
        name: str,
        profile_picture: Optional[str] = None,
        id_token: Optional[str] = None,
    ) -> AuthResult:
        if self.google_client_id:
            if not id_token:
                raise TokenInvalidError("Google ID token required")
            verified = await self._verify_google_id_token(id_token)
            google_id = verified["sub"]
            email = verified.get("email") or email
            name = verified.get("name") or name
            profile_picture = verified.get("picture") or profile_picture

        user = self.store.get_user_by_google_id(google_id)
        if user is None:
            user = self.store.get_user_by_email(email)
            if user is not None and not user.google_id:
                user = self.store.update_user(
                    user.id, google_id=google_id, profile_picture=profile_picture or user.profile_picture
                )
                self.logger.info("google_account_linked", user_id=user.id)
            elif user is not None:
                # email belongs to a different Google account
                raise InvalidCredentialsError()
        if user is None:
            try:
                user = self.store.create_user(
                    email, name, google_id=google_id, profile_picture=profile_picture
                )
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail)
            self.logger.info("user_created", user_id=user.id)
        if not user.is_active:
            self.logger.warning("login_blocked_suspended", user_id=user.id)
            raise AccountSuspendedError()
        tokens = self._issue_for(user)
        self.logger.info("user_login_succeeded", user_id=user.id)
        return AuthResult(subject=user, tokens=tokens)

    async def _verify_google_id_token(self, id_token: str) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout, follow_redirects=False) as client:
                response = await client.get(GOOGLE_TOKENINFO_URL, params={"id_token": id_token})
        except httpx.HTTPError as exc:
            self.logger.error("google_tokeninfo_request_failed", error=str(exc))
            raise TokenInvalidError("Unable to verify Google token")
        if response.status_code != 200:
            self.logger.warning("google_tokeninfo_rejected", status=response.status_code)
            raise TokenInvalidError("Invalid Google token")
        try:
            info = response.json()
        except ValueError:
            raise TokenInvalidError("Invalid Google token")
        if not isinstance(info, dict):
            raise TokenInvalidError("Invalid Google token")
        if info.get("aud") != self.google_client_id:
            self.logger.warning("google_token_audience_mismatch")
            raise TokenInvalidError("Invalid Google token")
        if info.get("iss") not in GOOGLE_ISSUERS or not info.get("sub"):
            raise TokenInvalidError("Invalid Google token")
        if str(info.get("email_verified", "false")).lower() != "true":
            raise TokenInvalidError("Google email is not verified")
        return info

    # admins
    async def admin_login(self, username: str, password: str) -> AuthResult:
        admin = self.store.get_admin_by_username(username)
        if admin is None:
            self._verify_hash(self._dummy_hash, password)
            self.logger.warning("admin_login_failed", reason="unknown_username")
            raise InvalidCredentialsError()
        if not self.verify_admin_password(admin, password):
            self.logger.warning("admin_login_failed", reason="bad_password", admin_id=admin.id)
            raise InvalidCredentialsError()
        if not admin.is_active:
            self.logger.warning("login_blocked_suspended", admin_id=admin.id)
            raise AccountSuspendedError()
        admin = self.store.update_admin(admin.id, last_login=datetime.utcnow()) or admin
        tokens = self._issue_for(admin)
        self.logger.info("admin_login_succeeded", admin_id=admin.id)
        return AuthResult(subject=admin, tokens=tokens)

    def create_admin(
        self,
        actor: Admin,
        username: str,
        password: str,
        role: AdminRole = AdminRole.MODERATOR,
    ) -> Admin:
        if actor.role is not AdminRole.SUPER_ADMIN:
            raise ForbiddenError("Super admin role required")
        if len(password) < 6:
            raise ValidationError("Password must be at least 6 characters")
        try:
            admin = self.store.create_admin(username, self._hash_password(password), role=role)
        except ConstraintViolation:
            raise ConflictError("Username already exists", detail={"field": "username"})
        self.logger.info(
            "admin_created", admin_id=admin.id, role=admin.role.value, created_by=actor.id
        )
        return admin

    def list_admins(self, actor: Admin) -> List[Admin]:
        if actor.role is not AdminRole.SUPER_ADMIN:
            raise ForbiddenError("Super admin role required")
        return self.store.list_admins()

    # refresh / logout
    async def refresh(self, refresh_token: str) -> AuthResult:
        payload = self.issuer.decode_refresh(refresh_token)
        rotated = self.token_store.rotate(refresh_token)
        try:
            subject = self.validator.load_subject(payload["sub"], SubjectKind(payload["kind"]))
            if not subject.is_active:
                raise AccountSuspendedError()
        except ServiceError as exc:
            self.token_store.revoke(rotated.token)
            self.logger.warning(
                "refresh_rejected", subject_id=payload["sub"], code=exc.error_code
            )
            raise
        access_token, access_exp = self.issuer.mint_access(subject_claims(subject))
        return AuthResult(
            subject=subject,
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=rotated.token,
                access_expires_at=access_exp,
                refresh_expires_at=rotated.expires_at,
            ),
        )

    async def logout(self, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            return False
        revoked = self.token_store.revoke(refresh_token)
        self.logger.info("logout", revoked=revoked)
        return revoked

    # passwords
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def verify_admin_password(self, admin: Admin, password: str) -> bool:
        ok = self._verify_hash(admin.password_hash, password)
        if ok and self._pwd_hasher.check_needs_rehash(admin.password_hash):
            self.store.update_admin(admin.id, password_hash=self._hash_password(password))
        return ok
