"""Configuration management using Pydantic Settings.

This module provides centralized configuration for the osu!complete worker,
supporting environment variables and .env file loading.

Example:
    >>> from osu_complete.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.db_path)
    'data/storage.db'
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    All settings can be overridden via environment variables or .env file.
    Environment variables take precedence over .env file values.

    Attributes:
        db_path: Path to SQLite database file.
        osu_client_id: osu! OAuth client ID.
        osu_client_secret: osu! OAuth client secret.
        api_base_url: Base URL of the osu! website (API lives under /api/v2).
        api_delay: Delay between osu! API calls in seconds.
        api_max_retries: Maximum retry attempts for failed API calls.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_dir: Directory for log files.
        scores_per_minute: Observed import speed for incremental imports.
        scores_per_minute_full: Observed import speed for full imports.
        history_snapshot_hour: Local hour after which the daily snapshot runs.
        base_url: Public site URL used in notification links.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    db_path: str = Field(
        default="data/storage.db",
        alias="OSU_DB_PATH",
        description="Path to SQLite database file",
    )

    # osu! API Configuration
    osu_client_id: str | None = Field(
        default=None,
        alias="OSU_CLIENT_ID",
        description="osu! OAuth client ID",
    )
    osu_client_secret: str | None = Field(
        default=None,
        alias="OSU_CLIENT_SECRET",
        description="osu! OAuth client secret",
    )
    api_base_url: str = Field(
        default="https://osu.ppy.sh",
        alias="OSU_API_BASE_URL",
        description="Base URL of the osu! website",
    )
    api_delay: float = Field(
        default=0.25,
        alias="OSU_API_DELAY",
        ge=0.0,
        description="Delay between API calls in seconds",
    )
    api_max_retries: int = Field(
        default=3,
        alias="OSU_API_MAX_RETRIES",
        ge=1,
        le=10,
        description="Maximum retry attempts for failed API calls",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    log_dir: str = Field(
        default="logs",
        alias="LOG_DIR",
        description="Directory for log files",
    )

    # Import queue
    scores_per_minute: int = Field(
        default=700,
        alias="SCORES_PER_MINUTE",
        gt=0,
        description="Most-played entries checked per minute by incremental imports",
    )
    scores_per_minute_full: int = Field(
        default=3350,
        alias="SCORES_PER_MINUTE_FULL",
        gt=0,
        description="Beatmaps checked per minute by full imports",
    )

    # History
    history_snapshot_hour: int = Field(
        default=0,
        alias="HISTORY_SNAPSHOT_HOUR",
        ge=0,
        le=23,
        description="Hour of day after which the daily history snapshot is taken",
    )

    # Notifications
    base_url: str = Field(
        default="http://localhost:8080",
        alias="BASE_URL",
        description="Public site URL used in notification links",
    )
    map_feed_webhook_url: str | None = Field(default=None, alias="MAP_FEED_WEBHOOK_URL")
    pass_feed_webhook_url: str | None = Field(default=None, alias="PASS_FEED_WEBHOOK_URL")
    user_feed_webhook_url: str | None = Field(default=None, alias="USER_FEED_WEBHOOK_URL")
    milestone_feed_webhook_url: str | None = Field(
        default=None, alias="MILESTONE_FEED_WEBHOOK_URL"
    )

    @field_validator("db_path", "log_dir")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure path strings are valid."""
        if not v or v.isspace():
            raise ValueError("Path cannot be empty or whitespace")
        return v

    @property
    def db_path_obj(self) -> Path:
        """Return database path as Path object."""
        return Path(self.db_path)

    @property
    def log_dir_obj(self) -> Path:
        """Return log directory as Path object."""
        return Path(self.log_dir)

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        self.db_path_obj.parent.mkdir(parents=True, exist_ok=True)
        self.log_dir_obj.mkdir(parents=True, exist_ok=True)


# Singleton pattern for settings
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> print(settings.api_delay)
        0.25
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset the settings singleton (useful for testing)."""
    global _settings
    _settings = None
