"""
Ticket Flow - Configuration
===========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from pathlib import Path
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
    APP_NAME: str = "Ticket Flow"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./ticketflow.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Version control
    # ==========================================================================
    GIT_BINARY: str = "git"
    GH_BINARY: str = "gh"
    GIT_COMMAND_TIMEOUT_SECONDS: float = 30.0
    PR_COMMAND_TIMEOUT_SECONDS: float = 60.0
    GIT_REMOTE: str = "origin"

    # Where worktree-isolated epics get their checkout:
    # sibling -> ../<project>-epic-<id>-<slug>, subfolder -> <project>/.worktrees/...
    WORKTREE_LOCATION: Literal["sibling", "subfolder"] = "sibling"

    # ==========================================================================
    # Process lock
    # ==========================================================================
    LOCK_FILE_PATH: Path = Path.home() / ".ticketflow" / "ticketflow.lock"

    # ==========================================================================
    # Audit sessions
    # ==========================================================================
    # Overrides environment auto-detection when set
    SESSION_ENVIRONMENT: Optional[str] = None

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

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
