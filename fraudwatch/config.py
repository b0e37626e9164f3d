from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from fraudwatch.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_DATA_ROOT = "/srv/fraudwatch"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _load_or_create_secret(name: str) -> str:
    """Read a persisted signing secret from DATA_ROOT, generating it on first use."""
    data_root = Path(os.getenv("DATA_ROOT", _DEFAULT_DATA_ROOT))
    secret_path = data_root / f".{name}"

    try:
        data_root.mkdir(parents=True, exist_ok=True)
        os.chmod(data_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed", error=str(exc), path=str(data_root)
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", name=name, error=str(exc))

    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(data_root), prefix=f".{name}_", suffix=".tmp")
    try:
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        Path(tmp_path).unlink(missing_ok=True)
        logger.error("secret_persist_failed", name=name, error=str(exc))
        raise RuntimeError(
            f"Unable to persist {name}; set it in the environment or make DATA_ROOT writable"
        ) from exc
    logger.warning("secret_generated", name=name, path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the fraud reporting API."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fraudwatch", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets.",
    )
    data_root: str = env_field(_DEFAULT_DATA_ROOT, "DATA_ROOT")
    upload_root: str | None = env_field(None, "UPLOAD_ROOT")

    # Tokens
    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("fraudwatch", "JWT_ISSUER")
    jwt_audience: str = env_field("fraudwatch-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    max_refresh_tokens_per_subject: int = env_field(
        5,
        "MAX_REFRESH_TOKENS_PER_SUBJECT",
        ge=1,
        description="Refresh tokens kept per subject after each login",
    )
    token_sweep_interval_seconds: int = env_field(3600, "TOKEN_SWEEP_INTERVAL_SECONDS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # OAuth
    google_client_id: str | None = env_field(
        None,
        "GOOGLE_CLIENT_ID",
        description="When set, Google ID tokens are verified on login",
    )

    # HTTP
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    default_page_size: int = env_field(10, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)

    # Uploads
    max_upload_bytes: int = env_field(5 * 1024 * 1024, "MAX_UPLOAD_BYTES", ge=1)
    max_upload_files: int = env_field(5, "MAX_UPLOAD_FILES", ge=1)
    max_image_pixels: int = env_field(40_000_000, "MAX_IMAGE_PIXELS", ge=1)
    allowed_image_types: list[str] = env_field(
        ["image/jpeg", "image/png", "image/webp"], "ALLOWED_IMAGE_TYPES"
    )

    # Localised content
    supported_languages: list[str] = env_field(["EN", "BN"], "SUPPORTED_LANGUAGES")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "cors_allow_origins", "allowed_image_types", "supported_languages", mode="before"
    )
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("redis_url", "google_client_id", "upload_root", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        if info.data.get("test_mode"):
            # never touch DATA_ROOT from tests
            return secrets.token_urlsafe(64)
        return _load_or_create_secret(info.field_name)

    @model_validator(mode="after")
    def _check_distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def resolved_upload_root(self) -> str:
        return self.upload_root or str(Path(self.data_root) / "uploads")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
