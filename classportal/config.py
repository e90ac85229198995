from __future__ import annotations

import json
import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the provisioning service and its clients."""

    # Backend (database-as-a-service) endpoint and keys
    backend_url: str = env_field("http://localhost:8000", "BACKEND_URL")
    backend_public_key: str | None = env_field(
        None,
        "BACKEND_PUBLIC_KEY",
        description="Public key shipped to clients; when set, requests must present it",
    )
    service_role_key: str | None = env_field(
        None,
        "SERVICE_ROLE_KEY",
        description="Server-side only key; never ship to clients",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/classportal", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/classportal", "SHARED_FS_ROOT")

    # Deep links embedded in emails
    app_base_url: str = env_field(
        "https://classroom.kelasotomesyen.com", "APP_BASE_URL"
    )

    # Email provider
    email_api_url: str = env_field("https://api.resend.com/emails", "EMAIL_API_URL")
    email_api_key: str | None = env_field(None, "EMAIL_API_KEY")
    email_from: str = env_field(
        "Kelas Otomesyen <noreply@kelasotomesyen.com>", "EMAIL_FROM"
    )
    email_dev_mode: bool = env_field(
        False,
        "EMAIL_DEV_MODE",
        description="Log emails instead of failing when no API key is configured",
    )
    email_timeout_seconds: float = env_field(30.0, "EMAIL_TIMEOUT_SECONDS")

    # Token lifetimes and password policy
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    invitation_ttl_days: int = env_field(7, "INVITATION_TTL_DAYS")
    min_password_length: int = env_field(6, "MIN_PASSWORD_LENGTH")

    # Client-side session cache location
    session_cache_path: str = env_field(
        "~/.classportal/session.json", "SESSION_CACHE_PATH"
    )

    cors_allow_origins: list[str] = env_field(["*"], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(False, "TEST_MODE")

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
            raw = value.strip()
            if raw.startswith("["):
                return json.loads(raw)
            return [origin.strip() for origin in raw.split(",") if origin.strip()]
        return value

    @field_validator("app_base_url", "backend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("reset_token_ttl_minutes", "invitation_ttl_days", "min_password_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @property
    def api_keys(self) -> set[str]:
        """Keys accepted by the HTTP boundary; empty means the gate is open."""
        if not self.backend_public_key:
            return set()
        keys = {self.backend_public_key}
        if self.service_role_key:
            keys.add(self.service_role_key)
        return keys


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
