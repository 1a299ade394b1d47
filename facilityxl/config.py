"""
Application configuration using pydantic-settings.

Loads configuration from environment variables (prefixed ``FXL_``) with
sensible defaults.
"""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FXL_",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Event streaming
    event_queue_size: int = 256
    event_history_size: int = 100

    # Pipeline
    blocking_priority: int = 8
    annualize_periods: bool = False

    # Session registry
    session_retention_seconds: int = 3600


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
