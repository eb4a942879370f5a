from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from catalog.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the catalog service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/catalog", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/catalog", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", gt=0
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    session_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TTL_MINUTES",
        gt=0,
        description="Session lifetime on login and on each refresh",
    )
    blacklist_ttl_minutes: int = env_field(
        24 * 60,
        "BLACKLIST_TTL_MINUTES",
        gt=0,
        description="Minimum lifetime of token and user-session blacklist entries",
    )
    redis_connect_timeout: float = env_field(5.0, "REDIS_CONNECT_TIMEOUT", gt=0)
    redis_socket_timeout: float = env_field(3.0, "REDIS_SOCKET_TIMEOUT", gt=0)
    cache_operation_timeout: float = env_field(
        3.0,
        "CACHE_OPERATION_TIMEOUT",
        gt=0,
        description="Deadline applied to every cache-store command",
    )
    db_statement_timeout_ms: int = env_field(5000, "DB_STATEMENT_TIMEOUT_MS", ge=0)
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _check_blacklist_outlives_tokens(self) -> "Settings":
        # A blacklist entry that expires before the token or session it revokes
        # would silently re-enable access.
        if self.blacklist_ttl_minutes < self.access_token_ttl_minutes:
            raise ValueError(
                "BLACKLIST_TTL_MINUTES must be >= ACCESS_TOKEN_TTL_MINUTES"
            )
        if self.blacklist_ttl_minutes < self.session_ttl_minutes:
            raise ValueError("BLACKLIST_TTL_MINUTES must be >= SESSION_TTL_MINUTES")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/catalog"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
