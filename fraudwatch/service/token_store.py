from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from fraudwatch.logging import get_logger
from fraudwatch.service.errors import TokenInvalidError
from fraudwatch.service.tokens import TokenIssuer
from fraudwatch.storage.models import RefreshToken, SubjectKind

logger = get_logger(__name__)

DEFAULT_KEEP = 5


class RefreshTokenStore(Protocol):
    def create_refresh_token(
        self,
        token: str,
        subject_id: str,
        subject_kind: SubjectKind,
        expires_at: datetime,
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_subject_refresh_tokens(self, subject_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def prune_refresh_tokens(self, subject_id: str, keep: int) -> int: ...


class TokenStore:
    """Server-side record of live refresh tokens.

    A refresh token is only honoured while its row exists here, so logout,
    suspension and rotation all work by deleting rows.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        issuer: TokenIssuer,
        *,
        keep: int = DEFAULT_KEEP,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.keep = keep

    def issue(
        self,
        subject_id: str,
        token: str,
        expires_at: datetime,
        subject_kind: SubjectKind,
    ) -> RefreshToken:
        return self.store.create_refresh_token(token, subject_id, subject_kind, expires_at)

    def resolve(self, token: str) -> RefreshToken:
        record = self.store.get_refresh_token(token)
        if record is None or record.is_expired():
            raise TokenInvalidError("Invalid refresh token")
        return record

    def rotate(self, old_token: str) -> RefreshToken:
        """Swap ``old_token`` for a freshly minted refresh token.

        The old row is consumed with compare-and-delete before anything new is
        written; of two concurrent rotations only one gets the row back.
        """
        consumed = self.store.consume_refresh_token(old_token)
        if consumed is None:
            logger.warning("refresh_rotation_rejected", reason="unknown_or_consumed")
            raise TokenInvalidError("Invalid refresh token")
        if consumed.is_expired():
            logger.info("refresh_rotation_rejected", reason="expired", subject_id=consumed.subject_id)
            raise TokenInvalidError("Invalid refresh token")
        token, expires_at = self.issuer.mint_refresh(
            {"sub": consumed.subject_id, "kind": consumed.subject_kind.value}
        )
        record = self.issue(consumed.subject_id, token, expires_at, consumed.subject_kind)
        logger.info(
            "refresh_token_rotated",
            subject_id=consumed.subject_id,
            subject_kind=consumed.subject_kind.value,
        )
        return record

    def revoke(self, token: str) -> bool:
        return self.store.delete_refresh_token(token)

    def revoke_all(self, subject_id: str) -> int:
        removed = self.store.delete_subject_refresh_tokens(subject_id)
        logger.info("refresh_tokens_revoked", subject_id=subject_id, count=removed)
        return removed

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.delete_expired_refresh_tokens(now)

    def prune_excess(self, subject_id: str, keep: Optional[int] = None) -> int:
        """Keep only the newest ``keep`` tokens for ``subject_id``."""
        return self.store.prune_refresh_tokens(
            subject_id, self.keep if keep is None else keep
        )
