from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_PHONE_PATTERN = r"^\+966[5][0-9]{8}$"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/zajel", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/zajel", "SHARED_FS_ROOT")

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT_SECONDS",
        description="Connect and command timeout; a timeout counts as cache unavailable",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour: sync Redis client, captcha bypass when unconfigured",
    )

    # Signing keys: inline PEM wins over paths; neither set means a persisted
    # key pair under SHARED_FS_ROOT/keys.
    jwt_private_key: str | None = env_field(None, "JWT_PRIVATE_KEY")
    jwt_public_key: str | None = env_field(None, "JWT_PUBLIC_KEY")
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token validity window"
    )
    refresh_token_ttl_days: int = env_field(
        30, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token and cookie validity window"
    )
    password_reset_ttl_minutes: int = env_field(10, "PASSWORD_RESET_TTL_MINUTES")

    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: str | None = env_field(
        None, "CORS_ALLOW_ORIGINS", description="Comma-separated list of allowed origins"
    )
    phone_pattern: str = env_field(DEFAULT_PHONE_PATTERN, "PHONE_PATTERN")

    recaptcha_secret_key: str | None = env_field(None, "RECAPTCHA_SECRET_KEY")
    recaptcha_verify_url: str = env_field(
        "https://www.google.com/recaptcha/api/siteverify", "RECAPTCHA_VERIFY_URL"
    )

    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_verify_service_sid: str | None = env_field(None, "TWILIO_VERIFY_SERVICE_SID")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Zajel Alsaadaaa", "EMAIL_FROM_NAME")

    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(
        None, "OAUTH_GOOGLE_CLIENT_SECRET"
    )
    oauth_google_redirect_uri: str | None = env_field(None, "OAUTH_GOOGLE_REDIRECT_URI")

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
        "jwt_private_key",
        "jwt_public_key",
        "jwt_private_key_path",
        "jwt_public_key_path",
        "recaptcha_secret_key",
        "twilio_account_sid",
        "twilio_auth_token",
        "twilio_verify_service_sid",
        "smtp_host",
        "oauth_google_client_id",
        "oauth_google_client_secret",
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("jwt_private_key", "jwt_public_key")
    @classmethod
    def _unescape_pem(cls, value: str | None) -> str | None:
        # PEMs passed through env files usually carry literal "\n" sequences
        if value and "\\n" in value:
            return value.replace("\\n", "\n")
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days", "password_reset_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @property
    def allowed_origins(self) -> list[str]:
        if not self.cors_allow_origins:
            return []
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60


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
