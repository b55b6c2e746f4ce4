from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tillguard.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environment; drives cookie flags and error verbosity."""

    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and session core."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/tillguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tillguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Permit in-process fallbacks and runtime resets used by the test suite.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tillguard", "JWT_ISSUER")
    jwt_audience: str = env_field("tillguard-clients", "JWT_AUDIENCE")
    csrf_secret: str | None = env_field(
        None,
        "CSRF_SECRET",
        description="HMAC key binding CSRF tokens to sessions; defaults to JWT_SECRET.",
    )

    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    session_timeout_minutes: int = env_field(12 * 60, "SESSION_TIMEOUT_MINUTES", ge=1)
    csrf_token_ttl_minutes: int = env_field(24 * 60, "CSRF_TOKEN_TTL_MINUTES", ge=1)

    # Brute-force defense
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS", ge=1)
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES", ge=1)
    login_rate_limit_shared: bool = env_field(
        False,
        "LOGIN_RATE_LIMIT_SHARED",
        description="Keep login attempt counters in Redis instead of process memory.",
    )
    pin_max_attempts: int = env_field(5, "PIN_MAX_ATTEMPTS", ge=1)
    pin_lockout_minutes: int = env_field(30, "PIN_LOCKOUT_MINUTES", ge=1)
    pin_attempt_reset_hours: int = env_field(24, "PIN_ATTEMPT_RESET_HOURS", ge=1)
    refresh_reuse_revokes_family: bool = env_field(
        False,
        "REFRESH_REUSE_REVOKES_FAMILY",
        description="Revoke every refresh token and session of a user when a rotated token is replayed.",
    )

    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)

    # Background sweeps
    blacklist_sweep_interval_seconds: int = env_field(
        24 * 60 * 60, "BLACKLIST_SWEEP_INTERVAL_SECONDS", ge=1
    )
    session_sweep_interval_seconds: int = env_field(
        60 * 60, "SESSION_SWEEP_INTERVAL_SECONDS", ge=1
    )
    csrf_sweep_interval_seconds: int = env_field(
        60 * 60, "CSRF_SWEEP_INTERVAL_SECONDS", ge=1
    )
    refresh_sweep_interval_seconds: int = env_field(
        24 * 60 * 60, "REFRESH_SWEEP_INTERVAL_SECONDS", ge=1
    )
    pin_sweep_interval_seconds: int = env_field(
        60 * 60, "PIN_SWEEP_INTERVAL_SECONDS", ge=1
    )

    # Audit sink
    audit_buffering: bool = env_field(False, "AUDIT_BUFFERING")
    audit_buffer_size: int = env_field(100, "AUDIT_BUFFER_SIZE", ge=1)
    audit_flush_interval_seconds: int = env_field(10, "AUDIT_FLUSH_INTERVAL_SECONDS", ge=1)
    audit_flush_chunk_size: int = env_field(25, "AUDIT_FLUSH_CHUNK_SIZE", ge=1)

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def cookie_samesite(self) -> str:
        # Dev frontends run on another port, which strict would block
        return "strict" if self.is_production else "lax"

    @property
    def effective_csrf_secret(self) -> str:
        return self.csrf_secret or self.jwt_secret

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Environment:
        if isinstance(value, Environment):
            return value
        return Environment(str(value).strip().lower())

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> str | None:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value or [])

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tillguard"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

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
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
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
