from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import (
    APIRouter,
    Body,
    Cookie,
    Depends,
    File,
    Header,
    Path,
    Query,
    Request,
    Response,
    UploadFile,
)

from fraudwatch.api.schemas import (
    AdminCreateRequest,
    AdminLoginRequest,
    AdminResponse,
    AuthResponse,
    ContentStatsResponse,
    Envelope,
    GoogleAuthRequest,
    LanguageContentResponse,
    OwnerStatusRequest,
    PageResponse,
    ProfileUpdateRequest,
    PublicReportResponse,
    RefreshRequest,
    ReportCreateRequest,
    ReportImageResponse,
    ReportResponse,
    ReviewRequest,
    SiteStatsResponse,
    UserActivityResponse,
    UserResponse,
    UserStatsResponse,
    UserStatusRequest,
)
from fraudwatch.config import get_settings
from fraudwatch.logging import get_logger
from fraudwatch.service.errors import (
    ForbiddenError,
    RateLimitedError,
    TokenInvalidError,
    ValidationError,
)
from fraudwatch.service.files import UploadedImage
from fraudwatch.service.runtime import check_rate_limit, get_runtime
from fraudwatch.service.session import extract_bearer
from fraudwatch.service.tokens import TokenPair
from fraudwatch.storage.models import (
    Admin,
    AdminRole,
    IdentityField,
    ReportStatus,
    SubjectKind,
    SubjectStatus,
    User,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        RateLimitedError: if the bucket for ``key`` is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise RateLimitedError(detail={"retry_after": reset_seconds})
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _set_refresh_cookie(response: Response, tokens: TokenPair) -> None:
    settings = get_settings()
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _refresh_token_from(
    body: Optional[RefreshRequest], cookie_token: Optional[str]
) -> Optional[str]:
    if body is not None and body.refresh_token:
        return body.refresh_token
    return cookie_token or None


# dependencies
async def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    runtime = get_runtime()
    return runtime.validator.validate(extract_bearer(authorization), SubjectKind.USER)


async def get_current_admin(authorization: Optional[str] = Header(None)) -> Admin:
    runtime = get_runtime()
    return runtime.validator.validate(extract_bearer(authorization), SubjectKind.ADMIN)


async def require_super_admin(admin: Admin = Depends(get_current_admin)) -> Admin:
    if admin.role is not AdminRole.SUPER_ADMIN:
        raise ForbiddenError("Super admin privileges required")
    return admin


# auth
@router.post("/auth/google", response_model=Envelope, tags=["auth"])
async def google_login(body: GoogleAuthRequest, request: Request, response: Response):
    """Sign a user in with their Google profile, creating the account on first use."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:google:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.google_login(
        google_id=body.google_id,
        email=body.email,
        name=body.name,
        profile_picture=body.profile_picture,
        id_token=body.id_token,
    )
    _set_refresh_cookie(response, result.tokens)
    return Envelope(
        message="Login successful",
        data=AuthResponse.from_result(result.subject, result.tokens),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
    cookie_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = _refresh_token_from(body, cookie_token)
    if not token:
        raise TokenInvalidError("Refresh token required")
    result = await runtime.auth.refresh(token)
    _set_refresh_cookie(response, result.tokens)
    return Envelope(
        message="Token refreshed",
        data=AuthResponse.from_result(result.subject, result.tokens),
    )


async def _logout(
    response: Response, body: Optional[RefreshRequest], cookie_token: Optional[str]
) -> Envelope:
    runtime = get_runtime()
    await runtime.auth.logout(_refresh_token_from(body, cookie_token))
    _clear_refresh_cookie(response)
    return Envelope(message="Logged out")


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
    cookie_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    return await _logout(response, body, cookie_token)


@router.post("/auth/admin/login", response_model=Envelope, tags=["auth"])
async def admin_login(body: AdminLoginRequest, request: Request, response: Response):
    """Authenticate an admin by username and password.

    Unknown usernames and wrong passwords produce the same 401 response.
    Rate limited per username and per client address.
    """
    runtime = get_runtime()
    limit = runtime.settings.login_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"login:admin:{body.username.lower()}", limit, 60)
    await _enforce_rate_limit(runtime, f"login:admin-ip:{_client_ip(request)}", limit, 60)
    result = await runtime.auth.admin_login(body.username, body.password)
    _set_refresh_cookie(response, result.tokens)
    return Envelope(
        message="Login successful",
        data=AuthResponse.from_result(result.subject, result.tokens),
    )


@router.post("/auth/admin/logout", response_model=Envelope, tags=["auth"])
async def admin_logout(
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
    cookie_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    return await _logout(response, body, cookie_token)


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_user(user: User = Depends(get_current_user)):
    return Envelope(data={"user": UserResponse.from_model(user)})


@router.get("/auth/admin/verify", response_model=Envelope, tags=["auth"])
async def verify_admin(admin: Admin = Depends(get_current_admin)):
    return Envelope(data={"admin": AdminResponse.from_model(admin)})


# user
@router.get("/user/profile", response_model=Envelope, tags=["user"])
async def get_profile(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    return Envelope(data=UserResponse.from_model(runtime.users.get_profile(user.id)))


@router.put("/user/profile", response_model=Envelope, tags=["user"])
async def update_profile(body: ProfileUpdateRequest, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    changes = {}
    if "profile_picture" in body.model_fields_set:
        changes["profile_picture"] = body.profile_picture
    updated = runtime.users.update_profile(user.id, name=body.name, **changes)
    return Envelope(message="Profile updated", data=UserResponse.from_model(updated))


@router.post("/user/reports", response_model=Envelope, status_code=201, tags=["reports"])
async def submit_report(body: ReportCreateRequest, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reports:submit:{user.id}",
        runtime.settings.rate_limit_max_requests,
        runtime.settings.rate_limit_window_seconds,
    )
    report = runtime.reports.submit(
        user.id,
        body.description,
        email=body.email,
        phone=body.phone,
        social_id=body.social_id,
    )
    return Envelope(message="Report submitted", data=ReportResponse.from_model(report))


@router.post(
    "/user/reports/{report_id}/images",
    response_model=Envelope,
    status_code=201,
    tags=["reports"],
)
async def upload_report_images(
    report_id: int = Path(..., ge=1),
    images: List[UploadFile] = File(...),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    max_files = runtime.files.max_files
    if len(images) > max_files:
        raise ValidationError(f"At most {max_files} images per upload")
    max_bytes = runtime.files.max_bytes
    uploads = []
    for upload in images:
        # read one byte past the cap so oversize files are detectable
        data = await upload.read(max_bytes + 1)
        uploads.append(
            UploadedImage(
                filename=upload.filename or "image",
                content_type=upload.content_type or "",
                data=data,
            )
        )
    records = runtime.reports.attach_images(user.id, report_id, uploads)
    return Envelope(
        message="Images uploaded",
        data={"images": [ReportImageResponse.from_model(image) for image in records]},
    )


@router.get("/user/reports", response_model=Envelope, tags=["reports"])
async def list_own_reports(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    status: Optional[ReportStatus] = Query(None),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    result = runtime.reports.list_own(user.id, page=page, limit=limit, status=status)
    return Envelope(data=PageResponse.from_page(result, ReportResponse.from_model))


@router.get("/user/reports/{report_id}", response_model=Envelope, tags=["reports"])
async def get_own_report(
    report_id: int = Path(..., ge=1), user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    report = runtime.reports.get_own(user.id, report_id)
    return Envelope(data=ReportResponse.from_model(report))


@router.put("/user/reports/{report_id}/status", response_model=Envelope, tags=["reports"])
async def update_own_report_status(
    body: OwnerStatusRequest,
    report_id: int = Path(..., ge=1),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    report = runtime.reports.update_own_status(user.id, report_id, body.status)
    return Envelope(message="Report status updated", data=ReportResponse.from_model(report))


@router.delete("/user/reports/{report_id}", response_model=Envelope, tags=["reports"])
async def delete_own_report(
    report_id: int = Path(..., ge=1), user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    runtime.reports.delete_own(user.id, report_id)
    return Envelope(message="Report deleted")


# admin
@router.get("/admin/reports", response_model=Envelope, tags=["admin"])
async def admin_list_reports(
    status: Optional[ReportStatus] = Query(None),
    identity_type: Optional[IdentityField] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    sort_by: Literal["created_at", "updated_at", "status"] = Query("created_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    admin: Admin = Depends(get_current_admin),
):
    """List every report with optional status, identity and date filters."""
    date_from, date_to = _naive_utc(date_from), _naive_utc(date_to)
    if date_from and date_to and date_to < date_from:
        raise ValidationError(
            "date_to must not be earlier than date_from", detail={"field": "date_to"}
        )
    runtime = get_runtime()
    result = runtime.reports.list_reports(
        status=status,
        identity_type=identity_type,
        date_from=date_from,
        date_to=date_to,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return Envelope(data=PageResponse.from_page(result, ReportResponse.from_model))


@router.get("/admin/reports/pending", response_model=Envelope, tags=["admin"])
async def admin_pending_reports(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    admin: Admin = Depends(get_current_admin),
):
    runtime = get_runtime()
    result = runtime.reports.list_pending(page=page, limit=limit)
    return Envelope(data=PageResponse.from_page(result, ReportResponse.from_model))


@router.get("/admin/reports/{report_id}", response_model=Envelope, tags=["admin"])
async def admin_get_report(
    report_id: int = Path(..., ge=1), admin: Admin = Depends(get_current_admin)
):
    runtime = get_runtime()
    return Envelope(data=ReportResponse.from_model(runtime.reports.get_report(report_id)))


@router.put("/admin/reports/{report_id}/status", response_model=Envelope, tags=["admin"])
async def admin_review_report(
    body: ReviewRequest,
    report_id: int = Path(..., ge=1),
    admin: Admin = Depends(get_current_admin),
):
    runtime = get_runtime()
    report = runtime.reports.review(admin, report_id, body.status, body.reason)
    return Envelope(message="Report reviewed", data=ReportResponse.from_model(report))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    search: Optional[str] = Query(None, max_length=255),
    status: Optional[SubjectStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    admin: Admin = Depends(get_current_admin),
):
    runtime = get_runtime()
    result = runtime.users.list_users(search=search, status=status, page=page, limit=limit)
    return Envelope(data=PageResponse.from_page(result, UserResponse.from_model))


@router.get("/admin/users/stats", response_model=Envelope, tags=["admin"])
async def admin_user_stats(admin: Admin = Depends(get_current_admin)):
    runtime = get_runtime()
    return Envelope(data=UserStatsResponse.from_stats(runtime.users.user_stats()))


@router.get("/admin/users/{user_id}/activity", response_model=Envelope, tags=["admin"])
async def admin_user_activity(
    user_id: str = Path(..., max_length=64), admin: Admin = Depends(get_current_admin)
):
    runtime = get_runtime()
    return Envelope(
        data=UserActivityResponse.from_activity(runtime.users.user_activity(user_id))
    )


@router.put("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_user_status(
    body: UserStatusRequest,
    user_id: str = Path(..., max_length=64),
    admin: Admin = Depends(get_current_admin),
):
    runtime = get_runtime()
    user = runtime.users.set_status(admin, user_id, body.status)
    return Envelope(message="User status updated", data=UserResponse.from_model(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=64), admin: Admin = Depends(get_current_admin)
):
    runtime = get_runtime()
    runtime.users.delete_user(admin, user_id)
    return Envelope(message="User deleted")


@router.post("/admin/admins", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_admin(
    body: AdminCreateRequest, admin: Admin = Depends(require_super_admin)
):
    runtime = get_runtime()
    created = runtime.auth.create_admin(admin, body.username, body.password, body.role)
    return Envelope(message="Admin created", data=AdminResponse.from_model(created))


@router.get("/admin/admins", response_model=Envelope, tags=["admin"])
async def admin_list_admins(admin: Admin = Depends(require_super_admin)):
    runtime = get_runtime()
    admins = runtime.auth.list_admins(admin)
    return Envelope(data={"admins": [AdminResponse.from_model(item) for item in admins]})


# public
def _parse_fields(raw: Optional[str]) -> Optional[List[IdentityField]]:
    if not raw:
        return None
    fields = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            fields.append(IdentityField(part))
        except ValueError:
            raise ValidationError(
                f"Unknown search field '{part}'", detail={"field": "fields"}
            )
    return fields or None


@router.get("/public/search", response_model=Envelope, tags=["public"])
async def public_search(
    request: Request,
    query: str = Query(..., min_length=2, max_length=255),
    fields: Optional[str] = Query(None, max_length=64),
):
    """Search approved reports by description and identity fields.

    ``fields`` is a comma separated subset of ``email``, ``phone`` and
    ``social_id``; all three are searched when it is omitted.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"public:search:{_client_ip(request)}",
        runtime.settings.rate_limit_max_requests,
        runtime.settings.rate_limit_window_seconds,
    )
    reports = runtime.reports.search_public(query, _parse_fields(fields))
    return Envelope(
        data={
            "query": query,
            "count": len(reports),
            "results": [PublicReportResponse.from_model(report) for report in reports],
        }
    )


@router.get("/public/recent", response_model=Envelope, tags=["public"])
async def public_recent(limit: int = Query(10, ge=1, le=50)):
    runtime = get_runtime()
    reports = runtime.reports.recent_public(limit)
    return Envelope(
        data={"reports": [PublicReportResponse.from_model(report) for report in reports]}
    )


@router.get("/public/reports/{report_id}", response_model=Envelope, tags=["public"])
async def public_report(report_id: int = Path(..., ge=1)):
    runtime = get_runtime()
    return Envelope(
        data=PublicReportResponse.from_model(runtime.reports.get_public(report_id))
    )


@router.get("/public/stats", response_model=Envelope, tags=["public"])
async def public_stats():
    runtime = get_runtime()
    return Envelope(data=SiteStatsResponse(**runtime.reports.site_stats()))


@router.get("/public/language/{lang}", response_model=Envelope, tags=["public"])
async def public_language_content(lang: str = Path(..., min_length=2, max_length=8)):
    runtime = get_runtime()
    return Envelope(data=LanguageContentResponse(**runtime.content.get_content(lang)))


@router.get("/public/languages", response_model=Envelope, tags=["public"])
async def public_languages():
    runtime = get_runtime()
    return Envelope(data={"languages": runtime.content.languages()})


@router.get("/public/content-keys", response_model=Envelope, tags=["public"])
async def public_content_keys():
    runtime = get_runtime()
    return Envelope(data={"keys": runtime.content.content_keys()})


@router.get("/public/content-stats", response_model=Envelope, tags=["public"])
async def public_content_stats():
    runtime = get_runtime()
    return Envelope(data=ContentStatsResponse(**runtime.content.stats()))
