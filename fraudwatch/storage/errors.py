from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        constraint: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.constraint = constraint


class DuplicateIdentity(ConstraintViolation):
    """A user already has a report naming one of the same identity values."""

    def __init__(self, user_id: str, fields: list[str]):
        super().__init__(
            "identity already reported by this user",
            {"user_id": user_id, "fields": fields},
            constraint="fraud_report_user_identity",
        )
        self.fields = fields


__all__ = ["ConstraintViolation", "DuplicateIdentity"]
