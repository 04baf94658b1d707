from __future__ import annotations

import os
import re
import secrets
from datetime import timedelta
from enum import Enum
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

from mailgate.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_duration(value: str) -> timedelta:
    """Parse a compact duration such as ``15m`` or ``7d`` into a timedelta."""
    match = _DURATION_PATTERN.match((value or "").strip())
    if not match:
        raise ValueError(f"invalid duration '{value}', expected <number><s|m|h|d>")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


class StoreBackend(str, Enum):
    """Where users, codes, refresh tokens and rate-limit windows persist."""

    MEMORY = "memory"
    POSTGRES = "postgres"


class EmailProvider(str, Enum):
    MOCK = "mock"
    LOG = "log"
    SMTP = "smtp"
    SENDGRID = "sendgrid"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the passwordless email login service."""

    app_name: str = env_field("Mailgate", "APP_NAME")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI: ephemeral JWT secret, mock email.",
    )

    # One-time codes
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_max_verify_attempts: int = env_field(5, "OTP_MAX_VERIFY_ATTEMPTS")
    otp_resend_cooldown_seconds: int = env_field(60, "OTP_RESEND_COOLDOWN_SECONDS")
    otp_hash_time_cost: int = env_field(
        2, "OTP_HASH_TIME_COST", description="argon2 time cost for code hashes"
    )
    otp_hash_memory_kib: int = env_field(
        19456, "OTP_HASH_MEMORY_KIB", description="argon2 memory cost (KiB) for code hashes"
    )

    # Fixed-window rate limits (limit per window)
    request_code_email_limit: int = env_field(5, "RATE_LIMIT_REQUEST_CODE_EMAIL")
    request_code_email_window_seconds: int = env_field(
        3600, "RATE_LIMIT_REQUEST_CODE_EMAIL_WINDOW"
    )
    request_code_origin_limit: int = env_field(10, "RATE_LIMIT_REQUEST_CODE_ORIGIN")
    request_code_origin_window_seconds: int = env_field(
        900, "RATE_LIMIT_REQUEST_CODE_ORIGIN_WINDOW"
    )
    verify_origin_limit: int = env_field(20, "RATE_LIMIT_VERIFY_ORIGIN")
    verify_origin_window_seconds: int = env_field(3600, "RATE_LIMIT_VERIFY_ORIGIN_WINDOW")
    verify_email_limit: int = env_field(20, "RATE_LIMIT_VERIFY_EMAIL")
    verify_email_window_seconds: int = env_field(3600, "RATE_LIMIT_VERIFY_EMAIL_WINDOW")

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("mailgate", "JWT_ISSUER")
    jwt_audience: str = env_field("mailgate-clients", "JWT_AUDIENCE")
    jwt_access_expires_in: str = env_field("15m", "JWT_ACCESS_EXPIRES_IN")
    jwt_refresh_expires_in: str = env_field("7d", "JWT_REFRESH_EXPIRES_IN")
    jwt_leeway_seconds: int = env_field(
        30, "JWT_LEEWAY_SECONDS", description="Allowance for clock skew across nodes"
    )

    # Backends
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/mailgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None, "REDIS_URL", description="When set, rate-limit windows live in Redis"
    )
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    sweep_interval_seconds: int = env_field(3600, "SWEEP_INTERVAL_SECONDS")

    # Email delivery
    email_provider: EmailProvider = env_field(EmailProvider.LOG, "EMAIL_PROVIDER")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Mailgate", "EMAIL_FROM_NAME")
    sendgrid_api_key: str | None = env_field(None, "SENDGRID_API_KEY")

    # HTTP boundary
    trust_proxy_headers: bool = env_field(
        False, "TRUST_PROXY_HEADERS", description="Honour X-Forwarded-For for origin keys"
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("lax", "COOKIE_SAMESITE")
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("email_provider")
    @classmethod
    def _validate_email_provider(cls, value: EmailProvider) -> EmailProvider:
        return EmailProvider(value)

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("otp_length must be between 4 and 10 digits")
        return value

    @field_validator(
        "otp_ttl_minutes",
        "otp_max_verify_attempts",
        "otp_hash_time_cost",
        "otp_hash_memory_kib",
        "request_code_email_limit",
        "request_code_email_window_seconds",
        "request_code_origin_limit",
        "request_code_origin_window_seconds",
        "verify_origin_limit",
        "verify_origin_window_seconds",
        "verify_email_limit",
        "verify_email_window_seconds",
        "store_timeout_seconds",
        "sweep_interval_seconds",
        "smtp_port",
    )
    @classmethod
    def _validate_positive(cls, value: int | float, info: ValidationInfo) -> int | float:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be greater than zero")
        return value

    @field_validator("otp_resend_cooldown_seconds", "jwt_leeway_seconds")
    @classmethod
    def _validate_non_negative(cls, value: int, info: ValidationInfo) -> int:
        if value < 0:
            raise ValueError(f"{info.field_name} must not be negative")
        return value

    @field_validator("jwt_access_expires_in", "jwt_refresh_expires_in")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("cookie_samesite must be lax, strict or none")
        return normalized

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.test_mode:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required unless TEST_MODE is enabled")
        # Tokens signed with an ephemeral secret do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(48)
        logger.warning("jwt_secret_generated", reason="test_mode")
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        return parse_duration(self.jwt_access_expires_in)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return parse_duration(self.jwt_refresh_expires_in)


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
