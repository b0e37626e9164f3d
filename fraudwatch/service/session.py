from __future__ import annotations

from typing import Optional, Protocol

from fraudwatch.service.errors import (
    AccountSuspendedError,
    SubjectNotFoundError,
    TokenInvalidError,
)
from fraudwatch.service.tokens import TokenIssuer
from fraudwatch.storage.models import Admin, Subject, SubjectKind, User


class SubjectStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_admin(self, admin_id: str) -> Optional[Admin]: ...


def extract_bearer(header: Optional[str]) -> str:
    """Pull the token out of an ``Authorization: Bearer`` header."""
    if not header:
        raise TokenInvalidError("Access token required")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenInvalidError("Access token required")
    return token.strip()


class SessionValidator:
    """Turns an access token into a live, active subject.

    The subject is reloaded from the store on every call; suspending an
    account takes effect on that account's very next request.
    """

    def __init__(self, issuer: TokenIssuer, store: SubjectStore) -> None:
        self.issuer = issuer
        self.store = store

    def validate(self, token: str, kind: Optional[SubjectKind] = None) -> Subject:
        payload = self.issuer.decode_access(token)
        token_kind = SubjectKind(payload["kind"])
        if kind is not None and token_kind is not kind:
            raise TokenInvalidError()
        subject = self.load_subject(payload["sub"], token_kind)
        if not subject.is_active:
            raise AccountSuspendedError()
        return subject

    def load_subject(self, subject_id: str, kind: SubjectKind) -> Subject:
        if kind is SubjectKind.ADMIN:
            subject: Optional[Subject] = self.store.get_admin(subject_id)
        else:
            subject = self.store.get_user(subject_id)
        if subject is None:
            raise SubjectNotFoundError()
        return subject
