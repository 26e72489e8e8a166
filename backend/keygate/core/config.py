"""Application-wide settings for the API key gateway."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application configuration."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    # JSONL fallback when no database is configured
    api_key_store_path: str = Field(
        default="storage/api_keys.jsonl", env="API_KEY_STORE_PATH"
    )
    api_key_prefix: str = Field(default="api_", env="API_KEY_PREFIX")
    # Usage accounting
    default_usage_limit: int = Field(default=1000, env="DEFAULT_USAGE_LIMIT")
    default_rate_limit_window: str = Field(
        default="monthly", env="DEFAULT_RATE_LIMIT_WINDOW"
    )
    rate_limit_max_attempts: int = Field(default=5, env="RATE_LIMIT_MAX_ATTEMPTS")
    # Basic auth for admin endpoints (optional)
    auth_basic_username: Optional[str] = Field(default=None, env="AUTH_BASIC_USERNAME")
    auth_basic_password_hash: Optional[str] = Field(
        default=None, env="AUTH_BASIC_PASSWORD_HASH"
    )
    auth_basic_password_plain: Optional[str] = Field(
        default=None, env="AUTH_BASIC_PASSWORD_PLAIN"
    )


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
