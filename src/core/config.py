"""
Centralized configuration management using Pydantic BaseSettings.
Supports SQLite for development/testing and PostgreSQL for production.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Environment types for the application."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class DatabaseType(str, Enum):
    """Supported database types."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class Settings(BaseSettings):
    """
    Application settings with support for multiple environments.
    Values come from the environment or a local .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Current environment (development, staging, production)",
    )

    # Database Configuration
    database_type: DatabaseType = Field(
        default=DatabaseType.SQLITE,
        description="Database type (sqlite or postgresql)",
    )
    database_url: str = Field(
        default="sqlite:///./data/partitions.db",
        description="Database connection URL",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements",
    )

    # Partitioning
    partition_schema: str = Field(
        default="public",
        description="PostgreSQL schema holding partitioned tables",
    )
    partition_name_suffix_length: int = Field(
        default=7,
        description="Length of the random suffix of generated partition names",
        ge=4,
        le=32,
    )
    partition_name_max_attempts: int = Field(
        default=5,
        description="Attempts to find an unused generated partition name",
        ge=1,
    )
    partition_catalog_ttl_seconds: float | None = Field(
        default=None,
        description="Optional expiry for cached partition listings; None disables expiry",
        gt=0,
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Application log level",
    )
    log_format: str = Field(
        default="text",
        description="Log format (json/text)",
    )
    log_file_path: Path | None = Field(
        default=None,
        description="Log file path",
    )

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format value."""
        if v not in ("json", "text"):
            raise ValueError(f"Invalid log format: {v}")
        return v

    @computed_field
    def is_postgresql(self) -> bool:
        """Check if using PostgreSQL database."""
        return self.database_type == DatabaseType.POSTGRESQL

    def get_database_url(self) -> str:
        """Get the database URL for the synchronous SQLAlchemy engine."""
        if self.is_postgresql:
            return self.database_url.replace("postgres://", "postgresql://", 1)
        return self.database_url


@lru_cache
def get_settings() -> "Settings":
    """Uses LRU cache to ensure single instance across application."""
    return Settings()


# Global settings instance
settings = get_settings()
