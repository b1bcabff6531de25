"""
b2cli settings.

Loaded from environment variables with the ``B2_`` prefix:

    B2_APPLICATION_KEY_ID=...   B2_APPLICATION_KEY=...
    B2_UPLOAD_THREADS=8         B2_RETRY_ATTEMPTS=3
    B2_LOG_LEVEL=DEBUG          B2_LOG_JSON=true

Usage:
    >>> from b2cli.config import get_settings
    >>> settings = get_settings()
    >>> settings.upload_threads
    4
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from b2cli.models.config import RetryConfig

DEFAULT_AUTH_URL = "https://api.backblazeb2.com"

MIN_PART_SIZE = 5 * 1000 * 1000


def _default_account_file() -> Path:
    return Path.home() / ".config" / "b2cli" / "account.json"


class B2Settings(BaseSettings):
    """Runtime settings for the transfer engine and CLI."""

    model_config = SettingsConfigDict(
        env_prefix="B2_",
        extra="ignore",
    )

    # Credentials
    application_key_id: str | None = None
    application_key: str | None = None
    auth_url: str = DEFAULT_AUTH_URL
    account_file: Path = Field(default_factory=_default_account_file)

    # Connection
    connect_timeout: float = Field(default=10.0, ge=1.0, le=120.0)
    request_timeout: float = Field(default=120.0, ge=1.0, le=600.0)

    # Resilience
    retry_attempts: int = Field(default=5, ge=1, le=20)
    retry_base_delay: float = Field(default=1.0, ge=0.0, le=30.0)
    retry_max_delay: float = Field(default=64.0, ge=1.0, le=300.0)

    # Transfers
    upload_threads: int = Field(default=4, ge=1, le=16)
    part_size: int | None = Field(default=None, ge=MIN_PART_SIZE)
    chunk_size: int = Field(default=1024 * 1024, ge=64 * 1024, le=64 * 1024 * 1024)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    log_json: bool = False

    @property
    def retry(self) -> RetryConfig:
        """Retry configuration shared by the upload and download engines."""
        return RetryConfig(
            max_attempts=self.retry_attempts,
            base_delay_seconds=self.retry_base_delay,
            max_delay_seconds=self.retry_max_delay,
        )


_settings: B2Settings | None = None


def get_settings() -> B2Settings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = B2Settings()
    return _settings


def configure_settings(**overrides: object) -> B2Settings:
    """Replace the process-wide settings with explicit overrides."""
    global _settings
    _settings = B2Settings(**overrides)  # type: ignore[arg-type]
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next get_settings() reloads them."""
    global _settings
    _settings = None


__all__ = [
    "B2Settings",
    "DEFAULT_AUTH_URL",
    "MIN_PART_SIZE",
    "get_settings",
    "configure_settings",
    "reset_settings",
]
