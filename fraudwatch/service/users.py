from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from fraudwatch.logging import get_logger
from fraudwatch.service.errors import NotFoundError, ValidationError
from fraudwatch.service.files import FileService
from fraudwatch.service.token_store import TokenStore
from fraudwatch.storage.models import Admin, Page, ReportImage, SubjectStatus, User

logger = get_logger(__name__)

_UNSET = object()
RECENT_USERS_LIMIT = 10


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes) -> Optional[User]: ...

    def list_users(
        self,
        *,
        search: Optional[str] = None,
        status: Optional[SubjectStatus] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[User], int]: ...

    def delete_user(self, user_id: str) -> Optional[List[ReportImage]]: ...

    def count_users(self, *, status: Optional[SubjectStatus] = None) -> int: ...

    def count_reports(self, *, user_id: Optional[str] = None) -> int: ...


class UserService:
    """Profile management for users and account administration for admins."""

    def __init__(
        self,
        store: UserStore,
        token_store: TokenStore,
        files: FileService,
        *,
        default_page_size: int = 10,
        max_page_size: int = 100,
    ) -> None:
        self.store = store
        self.token_store = token_store
        self.files = files
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_picture=_UNSET,
    ) -> User:
        changes = {}
        if name is not None:
            name = name.strip()
            if not 2 <= len(name) <= 100:
                raise ValidationError(
                    "Name must be 2 to 100 characters", detail={"field": "name"}
                )
            changes["name"] = name
        if profile_picture is not _UNSET:
            changes["profile_picture"] = profile_picture or None
        if not changes:
            return self.get_profile(user_id)
        user = self.store.update_user(user_id, **changes)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def list_users(
        self,
        *,
        search: Optional[str] = None,
        status: Optional[SubjectStatus] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Page:
        page = max(1, page)
        limit = min(max(1, limit or self.default_page_size), self.max_page_size)
        items, total = self.store.list_users(
            search=(search or "").strip() or None,
            status=status,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return Page(items=items, page=page, limit=limit, total=total)

    def user_stats(self) -> dict:
        recent, _ = self.store.list_users(offset=0, limit=RECENT_USERS_LIMIT)
        return {
            "total_users": self.store.count_users(),
            "active_users": self.store.count_users(status=SubjectStatus.ACTIVE),
            "suspended_users": self.store.count_users(status=SubjectStatus.SUSPENDED),
            "recent_users": recent,
        }

    def user_activity(self, user_id: str) -> dict:
        """Account summary for moderators: the user plus how many reports they filed."""
        user = self.get_profile(user_id)
        return {"user": user, "report_count": self.store.count_reports(user_id=user.id)}

    def set_status(self, admin: Admin, user_id: str, status: SubjectStatus) -> User:
        user = self.store.update_user(user_id, status=status)
        if user is None:
            raise NotFoundError("User not found")
        if status is SubjectStatus.SUSPENDED:
            self.token_store.revoke_all(user_id)
        logger.info(
            "user_status_changed", user_id=user_id, status=status.value, admin_id=admin.id
        )
        return user

    def delete_user(self, admin: Admin, user_id: str) -> None:
        removed_images = self.store.delete_user(user_id)
        if removed_images is None:
            raise NotFoundError("User not found")
        deleted_files = self.files.delete_files(image.path for image in removed_images)
        logger.info(
            "user_deleted",
            user_id=user_id,
            admin_id=admin.id,
            images_removed=deleted_files,
        )
