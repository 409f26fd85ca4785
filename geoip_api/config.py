"""Configuration loader for the GeoIP service."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GeoIPSettings(BaseSettings):
    """Pydantic-based configuration model."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    geoip_database_path: str
    geoip_download_url: Optional[str] = None
    geoip_update_schedule: Optional[str] = None

    geoip_initial_delay_seconds: float = 15.0
    geoip_fallback_delay_seconds: float = 60.0

    geoip_download_timeout: float = 60.0
    geoip_download_attempts: int = 3
    geoip_user_agent: str = "GeoIPApiUpdater/1.0"
    geoip_enable_tarball_extraction: bool = False
    geoip_temp_dir: Optional[str] = None

    geoip_log_level: str = "INFO"

    @field_validator("geoip_database_path", mode="before")
    @classmethod
    def require_database_path(cls, value: str | None) -> str:
        """Expand user home references and reject blank paths."""

        value_str = str(value or "").strip()
        if not value_str:
            raise ValueError("GEOIP_DATABASE_PATH must be configured")
        return os.path.expanduser(value_str)

    @field_validator(
        "geoip_download_url",
        "geoip_update_schedule",
        "geoip_temp_dir",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value_str = str(value).strip()
        return value_str or None

    @field_validator("geoip_initial_delay_seconds")
    @classmethod
    def non_negative_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("GEOIP_INITIAL_DELAY_SECONDS must not be negative")
        return value

    @field_validator("geoip_fallback_delay_seconds", "geoip_download_timeout")
    @classmethod
    def positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Delays and timeouts must be positive")
        return value

    @field_validator("geoip_download_attempts")
    @classmethod
    def positive_attempts(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("GEOIP_DOWNLOAD_ATTEMPTS must be at least 1")
        return value

    @property
    def database_path(self) -> Path:
        return Path(self.geoip_database_path)

    @property
    def refresh_enabled(self) -> bool:
        return bool(self.geoip_download_url)


def load_config() -> GeoIPSettings:
    """Load configuration from environment variables."""

    return GeoIPSettings()
