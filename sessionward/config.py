from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _at_least(value: int, floor: int, name: str) -> int:
    if value < floor:
        logger.warning("settings_value_clamped", field=name, value=value, floor=floor)
        return floor
    return value


class Settings(BaseModel):
    """Runtime settings for the token and session lifecycle services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionward", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-process cache fallback for tests.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Access tokens
    jwt_secret: str | None = env_field(
        None, "JWT_SECRET", description="Base64-encoded HMAC key, at least 256 bits"
    )
    jwt_issuer: str | None = env_field(None, "JWT_ISSUER")
    jwt_audience: str | None = env_field(None, "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    jwt_clock_skew_seconds: int = env_field(30, "JWT_CLOCK_SKEW_SECONDS")

    # Refresh tokens
    refresh_inactivity_seconds: int = env_field(
        7 * 24 * 3600,
        "REFRESH_INACTIVITY_SECONDS",
        description="Sliding inactivity window; each rotation restarts it",
    )
    refresh_absolute_seconds: int = env_field(
        30 * 24 * 3600,
        "REFRESH_ABSOLUTE_SECONDS",
        description="Hard cap on a single refresh token's lifetime",
    )
    max_sessions_per_user: int = env_field(3, "MAX_SESSIONS_PER_USER")
    refresh_token_bytes: int = env_field(64, "REFRESH_TOKEN_BYTES")
    session_purge_interval_seconds: int = env_field(
        3600, "SESSION_PURGE_INTERVAL_SECONDS"
    )

    # Blacklist
    blacklist_skew_ms: int = env_field(5000, "BLACKLIST_SKEW_MS")
    blacklist_min_ttl_ms: int = env_field(100, "BLACKLIST_MIN_TTL_MS")

    # One-time passcodes
    otp_ttl_seconds: int = env_field(5 * 60, "OTP_TTL_SECONDS")
    otp_max_resends: int = env_field(4, "OTP_MAX_RESENDS")
    otp_resend_interval_seconds: int = env_field(60, "OTP_RESEND_INTERVAL_SECONDS")
    otp_cooldown_seconds: int = env_field(5 * 60, "OTP_COOLDOWN_SECONDS")
    otp_max_verify_attempts: int = env_field(5, "OTP_MAX_VERIFY_ATTEMPTS")
    otp_resend_window_seconds: int = env_field(30 * 60, "OTP_RESEND_WINDOW_SECONDS")

    # Account lookup cache
    account_cache_ttl_seconds: int = env_field(30, "ACCOUNT_CACHE_TTL_SECONDS")
    account_cache_max_entries: int = env_field(10_000, "ACCOUNT_CACHE_MAX_ENTRIES")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sessionward", "EMAIL_FROM_NAME")

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

    @field_validator("redis_url", "jwt_issuer", "jwt_audience", "jwt_secret")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("access_token_ttl_seconds")
    @classmethod
    def _floor_access_ttl(cls, value: int) -> int:
        return _at_least(value, 60, "access_token_ttl_seconds")

    @field_validator("jwt_clock_skew_seconds", "blacklist_skew_ms")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        return max(value, 0)

    @field_validator("refresh_inactivity_seconds")
    @classmethod
    def _floor_inactivity(cls, value: int) -> int:
        return _at_least(value, 60, "refresh_inactivity_seconds")

    @field_validator("refresh_absolute_seconds")
    @classmethod
    def _floor_absolute(cls, value: int) -> int:
        return _at_least(value, 60, "refresh_absolute_seconds")

    @field_validator("max_sessions_per_user")
    @classmethod
    def _floor_max_sessions(cls, value: int) -> int:
        return _at_least(value, 1, "max_sessions_per_user")

    @field_validator("refresh_token_bytes")
    @classmethod
    def _floor_entropy(cls, value: int) -> int:
        # 32 bytes is the 256-bit minimum for refresh token entropy
        return _at_least(value, 32, "refresh_token_bytes")

    @field_validator("blacklist_min_ttl_ms")
    @classmethod
    def _floor_blacklist_ttl(cls, value: int) -> int:
        return _at_least(value, 1, "blacklist_min_ttl_ms")

    @field_validator("otp_max_resends", "otp_max_verify_attempts")
    @classmethod
    def _floor_otp_limits(cls, value: int) -> int:
        return max(value, 1)

    @field_validator("session_purge_interval_seconds")
    @classmethod
    def _floor_purge_interval(cls, value: int) -> int:
        return _at_least(value, 60, "session_purge_interval_seconds")


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
