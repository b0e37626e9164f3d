from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from fraudwatch.logging import get_logger
from fraudwatch.service.errors import TokenExpiredError, TokenInvalidError
from fraudwatch.storage.models import Admin, Subject, SubjectKind

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def to_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


def subject_claims(subject: Subject) -> dict[str, Any]:
    """Identity claims embedded in every token minted for ``subject``."""
    claims: dict[str, Any] = {"sub": subject.id, "kind": subject.kind.value}
    if isinstance(subject, Admin):
        claims["username"] = subject.username
        claims["role"] = subject.role.value
    else:
        claims["email"] = subject.email
    return claims


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Mints and verifies HS256 access and refresh tokens.

    The two token types are signed with different secrets, so a refresh
    token never verifies as an access token or the other way round.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl: timedelta = timedelta(minutes=30),
        refresh_ttl: timedelta = timedelta(days=7),
        issuer: str = "fraudwatch",
        audience: str = "fraudwatch-clients",
        clock_skew_leeway: timedelta = timedelta(seconds=120),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}
        self.issuer = issuer
        self.audience = audience
        self._leeway = clock_skew_leeway.total_seconds()
        self._clock = clock

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[REFRESH]

    def issue_pair(self, claims: dict[str, Any]) -> TokenPair:
        access_token, access_exp = self._mint(ACCESS, claims)
        refresh_token, refresh_exp = self._mint(REFRESH, claims)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def mint_access(self, claims: dict[str, Any]) -> tuple[str, datetime]:
        return self._mint(ACCESS, claims)

    def mint_refresh(self, claims: dict[str, Any]) -> tuple[str, datetime]:
        return self._mint(REFRESH, claims)

    def decode_access(self, token: str) -> dict[str, Any]:
        return self._decode(ACCESS, token)

    def decode_refresh(self, token: str) -> dict[str, Any]:
        return self._decode(REFRESH, token)

    def _mint(self, token_type: str, claims: dict[str, Any]) -> tuple[str, datetime]:
        if "sub" not in claims or "kind" not in claims:
            raise ValueError("token claims need 'sub' and 'kind'")
        now = int(self._clock())
        exp = now + int(self._ttls[token_type].total_seconds())
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": exp,
        }
        if token_type == REFRESH:
            # refresh tokens carry identity only
            payload = {
                key: payload[key]
                for key in ("sub", "kind", "iss", "aud", "type", "jti", "iat", "exp")
            }
        return self._encode_jwt(payload, self._secrets[token_type]), datetime.utcfromtimestamp(exp)

    def _sign(self, signing_input: str, secret: str) -> str:
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode(self, token_type: str, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalidError()
        # base64url segments are pure ASCII
        if not token.isascii():
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError()

        # Only HS256 is accepted; reject "none" and asymmetric algs outright
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError()
        if not isinstance(header, dict):
            raise TokenInvalidError()
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalidError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", self._secrets[token_type])
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError()
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        if payload.get("iss") != self.issuer:
            raise TokenInvalidError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalidError()
        if payload.get("type") != token_type:
            raise TokenInvalidError()
        if not payload.get("sub"):
            raise TokenInvalidError()
        try:
            SubjectKind(payload.get("kind"))
        except ValueError:
            raise TokenInvalidError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError()
        if exp_ts <= self._clock() - self._leeway:
            raise TokenExpiredError()
        return payload
