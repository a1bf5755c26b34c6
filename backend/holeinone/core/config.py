"""
Hole-in-One Engine - Configuration
==================================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Literal, Optional

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Hole-in-One Entry Engine"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    APP_BASE_URL: str = "http://localhost:5173"

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./holeinone.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Authentication (identity is asserted by the session collaborator)
    # ==========================================================================
    SECRET_KEY: str = "CHANGE-ME-IN-PRODUCTION-USE-LONG-RANDOM-STRING"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # ==========================================================================
    # Notifications
    # ==========================================================================
    NOTIFY_ENABLED: bool = False
    NOTIFY_API_URL: str = "http://localhost:8756"
    NOTIFY_API_KEY: Optional[str] = None
    NOTIFY_TIMEOUT_SECONDS: float = 10.0

    # ==========================================================================
    # Entry Lifecycle
    # ==========================================================================
    ENTRY_COOLDOWN_HOURS: int = 12
    INSTANT_WINDOW_MINUTES: int = 15
    MAGIC_LINK_WINDOW_MINUTES: int = 360
    STAFF_CODE_WINDOW_MINUTES: int = 15
    TERMS_VERSION: str = "2024-01"

    # ==========================================================================
    # Verification & Tokens
    # ==========================================================================
    VERIFICATION_TIMEOUT_HOURS: int = 12
    WITNESS_TOKEN_TTL_HOURS: int = 48
    MAGIC_LINK_TTL_HOURS: int = 6
    STAFF_CODE_MAX_FAILED_ATTEMPTS: int = 5
    STAFF_CODE_ATTEMPT_WINDOW_MINUTES: int = 15

    # ==========================================================================
    # Expiry Sweep
    # ==========================================================================
    SWEEP_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 60
    SWEEP_BATCH_SIZE: int = 100

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def entry_cooldown(self) -> timedelta:
        return timedelta(hours=self.ENTRY_COOLDOWN_HOURS)

    @property
    def verification_timeout(self) -> timedelta:
        return timedelta(hours=self.VERIFICATION_TIMEOUT_HOURS)

    @property
    def window_minutes_by_path(self) -> dict[str, int]:
        """Attempt-window length in minutes, keyed by entry path value."""
        return {
            "instant": self.INSTANT_WINDOW_MINUTES,
            "magic_link": self.MAGIC_LINK_WINDOW_MINUTES,
            "staff_code": self.STAFF_CODE_WINDOW_MINUTES,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
