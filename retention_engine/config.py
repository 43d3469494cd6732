# retention_engine/config.py
"""
Centralized configuration with validation.

Uses pydantic-settings to load and validate environment variables.
Fail fast with clear error messages if required config is missing.
"""

from functools import lru_cache
from typing import ClassVar

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the retention engine's CLI and admin API."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = Field(
        ...,
        description="SQLAlchemy URL of the store whose rows are expired",
    )

    # Authentication
    ADMIN_API_KEY: str | None = Field(
        default=None,
        description="API key for admin endpoints (admin router fails closed when unset)",
    )

    # Retention engine
    RETENTION_REGISTRY: str | None = Field(
        default=None,
        description="Import path of the host's PolicyRegistry, e.g. 'myapp.retention:registry'",
    )
    RETENTION_LOCK_NAMESPACE: str = Field(
        default="retention_engine",
        description="Prefix hashed into every advisory lock key",
    )
    RETENTION_LOCK_BACKEND: str = Field(
        default="auto",
        description="Lock backend: auto (by dialect), advisory, in_process",
    )
    RETENTION_MAX_ROUNDS: int = Field(
        default=10,
        ge=1,
        description="Maximum backlog rounds per chain before giving up until the next trigger",
    )

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="DEBUG, INFO, WARNING, ERROR")
    LOG_JSON: bool = Field(default=True, description="Emit single-line JSON logs")

    LOCK_BACKENDS: ClassVar[set[str]] = {"auto", "advisory", "in_process"}

    @field_validator("RETENTION_LOCK_BACKEND")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in cls.LOCK_BACKENDS:
            raise ValueError(f"RETENTION_LOCK_BACKEND must be one of {sorted(cls.LOCK_BACKENDS)}, got '{v}'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("DATABASE_URL")
    @classmethod
    def fix_database_url(cls, v: str) -> str:
        """Hosting platforms hand out postgresql:// but SQLAlchemy needs postgresql+psycopg2://"""
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+psycopg2://", 1)
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings. Call at startup to validate config."""
    return Settings()
