from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionBackend(str, Enum):
    """Where server-held session state lives."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at startup and passed to constructors."""

    identity_database_url: str = env_field(
        "postgresql://localhost:5432/intranet_users", "IDENTITY_DATABASE_URL"
    )
    content_database_url: str = env_field(
        "postgresql://localhost:5432/intranet_content", "CONTENT_DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    session_backend: SessionBackend = env_field(
        SessionBackend.REDIS,
        "SESSION_BACKEND",
        description="Session store: 'memory' for single-process/dev, 'redis' for production",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    # Login rate limiting
    login_max_attempts: int = env_field(
        5, "LOGIN_MAX_ATTEMPTS", description="Failed attempts per IP or email before blocking"
    )
    login_window_seconds: int = env_field(
        900, "LOGIN_WINDOW_SECONDS", description="Trailing window for counting failures"
    )
    login_attempt_retention_days: int = env_field(30, "LOGIN_ATTEMPT_RETENTION_DAYS")
    attempt_cleanup_probability: float = env_field(
        0.01,
        "ATTEMPT_CLEANUP_PROBABILITY",
        description="Chance per recorded attempt of running the retention sweep",
    )
    trust_proxy_headers: bool = env_field(
        True,
        "TRUST_PROXY_HEADERS",
        description="Derive client IP from X-Forwarded-For / X-Real-IP",
    )
    # Sessions
    session_lifetime_seconds: int = env_field(
        86400, "SESSION_LIFETIME", description="Idle timeout for authenticated sessions"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    # TOTP
    totp_issuer: str = env_field("Intranet", "TOTP_ISSUER")
    totp_encryption_key: str | None = env_field(
        None,
        "TOTP_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest",
    )
    # Invitations
    invitation_default_ttl_hours: int = env_field(48, "INVITATION_DEFAULT_TTL_HOURS")
    invitation_max_ttl_hours: int = env_field(168, "INVITATION_MAX_TTL_HOURS")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] | None = env_field(None, "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str | None = env_field(None, "BUILD_SHA")

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

    @field_validator("session_backend")
    @classmethod
    def _validate_session_backend(cls, value: SessionBackend) -> SessionBackend:
        return SessionBackend(value)

    @field_validator("redis_url", "totp_encryption_key")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "login_max_attempts",
        "login_window_seconds",
        "login_attempt_retention_days",
        "session_lifetime_seconds",
        "invitation_default_ttl_hours",
        "invitation_max_ttl_hours",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("attempt_cleanup_probability")
    @classmethod
    def _validate_probability(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("attempt_cleanup_probability must be between 0 and 1")
        return value


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
