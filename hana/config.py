from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hana.logging import get_logger

logger = get_logger(__name__)


class RateLimitBackend(str, Enum):
    """Where the per-phone code request window is kept."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the Hana backend."""

    app_env: str = env_field("development", "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/hana", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and Redis fallback for test runs.",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.MEMORY, "RATE_LIMIT_BACKEND"
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("hana", "JWT_ISSUER")
    jwt_audience: str = env_field("hana-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30,
        "JWT_LEEWAY_SECONDS",
        description="Allowed clock skew when checking access token expiry",
    )
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(60, "SESSION_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")

    verification_code_ttl_minutes: int = env_field(10, "VERIFICATION_CODE_TTL_MINUTES")
    code_request_limit: int = env_field(5, "CODE_REQUEST_LIMIT")
    code_request_window_minutes: int = env_field(15, "CODE_REQUEST_WINDOW_MINUTES")
    max_code_attempts: int = env_field(
        5,
        "MAX_CODE_ATTEMPTS",
        description="Failed verifications after which a phone's pending codes stop working",
    )
    default_country_code: str = env_field("1", "DEFAULT_COUNTRY_CODE")
    min_phone_digits: int = env_field(10, "MIN_PHONE_DIGITS")

    sweep_interval_seconds: int = env_field(3600, "SWEEP_INTERVAL_SECONDS")
    ip_rate_limit: int = env_field(100, "IP_RATE_LIMIT")
    ip_rate_limit_window_minutes: int = env_field(15, "IP_RATE_LIMIT_WINDOW_MINUTES")

    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = env_field(None, "TWILIO_FROM_NUMBER")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS")
    sms_app_name: str = env_field("Hana", "SMS_APP_NAME")

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
        return self.app_env.lower() == "production"

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "session_ttl_minutes",
        "refresh_token_ttl_days",
        "verification_code_ttl_minutes",
        "code_request_limit",
        "code_request_window_minutes",
        "max_code_attempts",
        "min_phone_digits",
        "sweep_interval_seconds",
        "ip_rate_limit",
        "ip_rate_limit_window_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("default_country_code")
    @classmethod
    def _validate_country_code(cls, value: str) -> str:
        value = value.strip().lstrip("+")
        if not value.isdigit() or len(value) > 3:
            raise ValueError("country code must be 1-3 digits")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if self.is_production:
            raise ValueError("JWT_SECRET must be set when APP_ENV=production")
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            app_env=self.app_env,
            message="JWT_SECRET not set; using a per-process secret",
        )
        self.jwt_secret = secrets.token_urlsafe(64)
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
