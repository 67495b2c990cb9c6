from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from useraccess.logging import get_logger

logger = get_logger(__name__)

# Shortest signing key accepted for HS256 tokens
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/useraccess", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and runtime resets.",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    # Token settings
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("useraccess", "JWT_ISSUER")
    jwt_audience: str = env_field("useraccess-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        30, "ACCESS_TOKEN_TTL_MINUTES", description="Access token TTL in minutes"
    )
    refresh_token_ttl_minutes: int = env_field(
        24 * 60, "REFRESH_TOKEN_TTL_MINUTES", description="Refresh token TTL in minutes"
    )
    # OTP namespaces: one prefix/TTL pair per key role and purpose
    otp_max_resend_attempts: int = env_field(
        3, "OTP_MAX_RESEND_ATTEMPTS", description="Resends allowed per attempts window"
    )
    email_verification_otp_prefix: str = env_field(
        "otp:verification:code:", "EMAIL_VERIFICATION_OTP_PREFIX"
    )
    email_verification_otp_ttl_seconds: int = env_field(
        600, "EMAIL_VERIFICATION_OTP_TTL_SECONDS"
    )
    email_verification_email_prefix: str = env_field(
        "otp:verification:email:", "EMAIL_VERIFICATION_EMAIL_PREFIX"
    )
    email_verification_email_ttl_seconds: int = env_field(
        600, "EMAIL_VERIFICATION_EMAIL_TTL_SECONDS"
    )
    email_verification_attempts_prefix: str = env_field(
        "otp:verification:attempts:", "EMAIL_VERIFICATION_ATTEMPTS_PREFIX"
    )
    email_verification_attempts_ttl_seconds: int = env_field(
        1800, "EMAIL_VERIFICATION_ATTEMPTS_TTL_SECONDS"
    )
    password_recovery_otp_prefix: str = env_field(
        "otp:recovery:code:", "PASSWORD_RECOVERY_OTP_PREFIX"
    )
    password_recovery_otp_ttl_seconds: int = env_field(
        600, "PASSWORD_RECOVERY_OTP_TTL_SECONDS"
    )
    password_recovery_email_prefix: str = env_field(
        "otp:recovery:email:", "PASSWORD_RECOVERY_EMAIL_PREFIX"
    )
    password_recovery_email_ttl_seconds: int = env_field(
        600, "PASSWORD_RECOVERY_EMAIL_TTL_SECONDS"
    )
    password_recovery_attempts_prefix: str = env_field(
        "otp:recovery:attempts:", "PASSWORD_RECOVERY_ATTEMPTS_PREFIX"
    )
    password_recovery_attempts_ttl_seconds: int = env_field(
        1800, "PASSWORD_RECOVERY_ATTEMPTS_TTL_SECONDS"
    )
    # Federated sign-in
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    # Email delivery; unset SMTP_HOST logs OTP mails instead of sending them
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Vendo Accounts", "EMAIL_FROM_NAME")

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
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _warn_weak_jwt_secret(cls, value: str | None) -> str | None:
        # Token minting fails loudly on a weak key; flag it at load time too
        if not value or len(value) < MIN_JWT_SECRET_LENGTH:
            logger.warning(
                "jwt_secret_weak_or_missing",
                min_length=MIN_JWT_SECRET_LENGTH,
                configured=bool(value),
            )
        return value

    @field_validator(
        "otp_max_resend_attempts",
        "email_verification_otp_ttl_seconds",
        "email_verification_email_ttl_seconds",
        "email_verification_attempts_ttl_seconds",
        "password_recovery_otp_ttl_seconds",
        "password_recovery_email_ttl_seconds",
        "password_recovery_attempts_ttl_seconds",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _require_distinct_prefixes(self) -> "Settings":
        prefixes = [
            self.email_verification_otp_prefix,
            self.email_verification_email_prefix,
            self.email_verification_attempts_prefix,
            self.password_recovery_otp_prefix,
            self.password_recovery_email_prefix,
            self.password_recovery_attempts_prefix,
        ]
        if any(not prefix for prefix in prefixes):
            raise ValueError("OTP key prefixes must be non-empty")
        if len(set(prefixes)) != len(prefixes):
            raise ValueError("OTP key prefixes must be unique across namespaces")
        return self


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
