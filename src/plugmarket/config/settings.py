from __future__ import annotations

import sys
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PLUGMARKET_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="Environment name")
    PLATFORM_VERSION: str = Field(
        default="1.0.0", description="Host platform version used for compatibility checks"
    )
    RUNTIME_VERSION: str = Field(
        default="",
        description="Runtime version used for compatibility checks; empty means the running interpreter",
    )
    DEFAULT_CHANNEL: str = Field(default="stable", description="stable|beta|alpha|rc")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///plugmarket_dev.db")
    TEST_DATABASE_URL: str = Field(default="sqlite:///:memory:")
    SCHEMA_MODE: str = Field(
        default="create_all",
        description="create_all: auto-create tables (dev), migrations: tables managed externally",
    )

    # Remote marketplace / license authority
    MARKETPLACE_BASE_URL: str = Field(
        default="https://marketplace.example.com/api/v1",
        description="Marketplace and licensing authority base URL",
    )
    MARKETPLACE_API_KEY: str = Field(default="", description="Bearer token for the marketplace")
    MARKETPLACE_TIMEOUT_SECONDS: float = Field(
        default=30.0, description="Timeout for license and update-feed requests"
    )
    DOWNLOAD_TIMEOUT_SECONDS: float = Field(
        default=90.0, description="Timeout for package downloads"
    )
    INSTANCE_URL: str = Field(
        default="http://localhost", description="Instance URL reported on license verification"
    )
    INSTANCE_ID: str = Field(default="", description="Stable id of this installation")

    # Filesystem
    PACKAGES_PATH: str = Field(
        default="./data/packages", description="Root of installed package directories"
    )
    BACKUP_STORAGE_PATH: str = Field(
        default="./data/backups", description="Root of the backup archive storage"
    )
    TEMP_PATH: str = Field(default="./data/tmp", description="Scratch space for downloads")

    # Update pipeline
    UPDATE_TIMEOUT_SECONDS: float = Field(
        default=600.0, description="Deadline for a single update pipeline run; 0 disables"
    )

    @property
    def effective_runtime_version(self) -> str:
        if self.RUNTIME_VERSION.strip():
            return self.RUNTIME_VERSION.strip()
        info = sys.version_info
        return f"{info.major}.{info.minor}.{info.micro}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
