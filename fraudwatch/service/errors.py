from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable error codes returned in the ``code`` field of error bodies."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    SUBJECT_NOT_FOUND = "SUBJECT_NOT_FOUND"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    FORBIDDEN = "FORBIDDEN"
    DUPLICATE_REPORT = "DUPLICATE_REPORT"
    REPORT_PROCESSED = "REPORT_PROCESSED"
    CANNOT_UPDATE_APPROVED = "CANNOT_UPDATE_APPROVED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and an :class:`ErrorKind`;
    the API layer renders them as ``{"success": false, "error", "code"}``.
    """

    status_code: int = 500
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value


class InvalidCredentialsError(ServiceError):
    status_code = 401
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "Invalid credentials"


class TokenInvalidError(ServiceError):
    status_code = 401
    kind = ErrorKind.TOKEN_INVALID
    default_message = "Invalid token"


class TokenExpiredError(ServiceError):
    status_code = 401
    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "Token expired"


class SubjectNotFoundError(ServiceError):
    """Token was valid but the account behind it is gone."""

    status_code = 401
    kind = ErrorKind.SUBJECT_NOT_FOUND
    default_message = "Account not found"


class AccountSuspendedError(ServiceError):
    status_code = 403
    kind = ErrorKind.ACCOUNT_SUSPENDED
    default_message = "Account is suspended"


class ForbiddenError(ServiceError):
    status_code = 403
    kind = ErrorKind.FORBIDDEN
    default_message = "Access denied"


class DuplicateReportError(ServiceError):
    status_code = 400
    kind = ErrorKind.DUPLICATE_REPORT
    default_message = "You have already reported this identity"


class ReportProcessedError(ServiceError):
    """Owner tried to delete a report that is no longer pending."""

    status_code = 400
    kind = ErrorKind.REPORT_PROCESSED
    default_message = "Cannot delete a report that has already been processed"


class CannotUpdateApprovedError(ServiceError):
    status_code = 400
    kind = ErrorKind.CANNOT_UPDATE_APPROVED
    default_message = "Cannot change the status of an approved report"


class ValidationError(ServiceError):
    status_code = 400
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "Validation failed"


class NotFoundError(ServiceError):
    status_code = 404
    kind = ErrorKind.NOT_FOUND
    default_message = "Not found"


class ConflictError(ServiceError):
    status_code = 409
    kind = ErrorKind.CONFLICT
    default_message = "Resource already exists"


class RateLimitedError(ServiceError):
    status_code = 429
    kind = ErrorKind.RATE_LIMITED
    default_message = "Too many requests, please try again later"


class ServerError(ServiceError):
    status_code = 500
    kind = ErrorKind.INTERNAL_ERROR


__all__ = [
    "ErrorKind",
    "ServiceError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "TokenExpiredError",
    "SubjectNotFoundError",
    "AccountSuspendedError",
    "ForbiddenError",
    "DuplicateReportError",
    "ReportProcessedError",
    "CannotUpdateApprovedError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
