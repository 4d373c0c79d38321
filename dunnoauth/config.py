from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from dunnoauth.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_cache_fallback_dev: bool = env_field(False, "ALLOW_CACHE_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows the in-memory cache.",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET_KEY", validate_default=True)
    jwt_issuer: str = env_field("dunno-api", "JWT_ISSUER")
    jwt_audience: str = env_field("dunno-client", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    temp_token_ttl_seconds: int = env_field(
        300,
        "TEMP_TOKEN_TTL_SECONDS",
        description="Lifetime of the pending-2FA token issued after password success",
    )

    # Abuse rate limiting
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_max_attempts: int = env_field(5, "RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")

    # Policy cooldown for username/email/password changes
    field_change_cooldown_days: int = env_field(14, "FIELD_CHANGE_COOLDOWN_DAYS")

    # Second factor; must stay fixed between enrollment and verification
    totp_issuer: str = env_field("dunNotes", "TOTP_ISSUER")
    totp_label: str = env_field("dunnoAuth", "TOTP_LABEL")
    totp_algorithm: str = env_field("SHA512", "TOTP_ALGORITHM")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_period: int = env_field(30, "TOTP_PERIOD")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting stored TOTP secrets; derived from JWT secret if unset",
    )

    # Password hashing cost
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_hash_len: int = env_field(32, "ARGON2_HASH_LEN")

    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        # A missing signing key is fatal at startup.
        if not value:
            raise ValueError("JWT_SECRET_KEY is not provided")
        if len(value) < _MIN_SECRET_LENGTH:
            logger.warning(
                "jwt_secret_short",
                length=len(value),
                recommended=_MIN_SECRET_LENGTH,
            )
        return value

    @field_validator("totp_algorithm")
    @classmethod
    def _validate_totp_algorithm(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in {"SHA1", "SHA256", "SHA512"}:
            raise ValueError(f"unsupported TOTP algorithm: {value}")
        return normalized

    @field_validator(
        "rate_limit_max_attempts",
        "rate_limit_window_seconds",
        "temp_token_ttl_seconds",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "recovery_code_count",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
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
