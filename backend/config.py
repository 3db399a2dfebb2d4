"""
Reconciliation Engine - Configuration

All runtime configuration comes from environment variables (or backend/.env):
database connection, internal API keys, matching engine tuning,
notification delivery and observability. Nothing secret is hardcoded.
"""

from typing import List
from functools import lru_cache
import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Matching tuning is validated at load time: a worker count of zero or a
    negative window would silently disable reconciliation otherwise.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(default="development", description="development, staging, production or test")
    DEBUG: bool = Field(default=False)

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(default="", description="Async SQLAlchemy URL, e.g. postgresql+asyncpg://...")
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="reconciliation")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="require")
    DB_POOL_SIZE: int = Field(default=5, ge=1)
    DB_MAX_OVERFLOW: int = Field(default=10, ge=0)

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(default="", description="Key accepted in X-Internal-Api-Key")
    INTERNAL_API_KEYS: str = Field(default="", description="Comma-separated extra keys, for rotation")

    # ==================== MATCHING ENGINE ====================
    RECON_BATCH_LIMIT: int = Field(default=1000, ge=1, description="Most transactions loaded per batch")
    RECON_MAX_WORKERS: int = Field(default=4, ge=1, le=64, description="Transactions matched concurrently")
    RECON_DATE_WINDOW_DAYS: int = Field(default=7, ge=0, description="Candidate window, +/- days")
    RECON_AMOUNT_BAND: float = Field(default=100.0, gt=0, description="Candidate band, +/- absolute amount")

    # ==================== NOTIFICATIONS ====================
    NOTIFICATION_SERVICE_URL: str = Field(default="", description="Empty means notifications are only logged")
    NOTIFICATION_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    NOTIFICATION_CHANNELS: str = Field(default="in_app", description="Comma-separated batch notification channels")

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(default="")
    LOG_LEVEL: str = Field(default="INFO")

    # ==================== API ====================
    API_TITLE: str = Field(default="Reconciliation & Matching Engine")
    API_VERSION: str = Field(default="1.0.0")

    @field_validator("ENVIRONMENT")
    @classmethod
    def normalise_environment(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("LOG_LEVEL")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {LOG_LEVELS}")
        return value

    # ==================== DERIVED ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def debug_enabled(self) -> bool:
        return self.DEBUG or self.is_development

    @property
    def internal_api_keys(self) -> List[str]:
        keys = [self.INTERNAL_API_KEY] if self.INTERNAL_API_KEY else []
        keys.extend(k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip())
        return keys

    @property
    def notification_channels(self) -> List[str]:
        return [c.strip() for c in self.NOTIFICATION_CHANNELS.split(",") if c.strip()]

    def get_database_url(self) -> str:
        """DATABASE_URL, or one assembled from the POSTGRES_* variables."""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            return (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")

    def validate_production_config(self) -> List[str]:
        """Problems that must block a production start."""
        errors = []

        if not self.DATABASE_URL and not self.POSTGRES_HOST:
            errors.append("DATABASE_URL is required")
        if "sqlite" in self.DATABASE_URL.lower():
            errors.append("SQLite is not supported in production")
        if "localhost" in self.DATABASE_URL.lower():
            errors.append("DATABASE_URL cannot point to localhost in production")
        if not self.internal_api_keys:
            errors.append("INTERNAL_API_KEY is required")
        if self.DEBUG:
            errors.append("DEBUG should be False in production")

        return errors


@lru_cache()
def get_settings() -> Settings:
    """
    Settings are loaded once per process.
    In production an invalid configuration raises instead of starting.
    """
    settings = Settings()
    logger.info(f"Environment: {settings.ENVIRONMENT} (debug={settings.debug_enabled})")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


def validate_environment() -> dict:
    """
    Report which variables are set, for startup logs and /api/config/status.

    Missing required variables are errors; missing optional ones are
    warnings describing the degraded behaviour.
    """
    settings = get_settings()

    status = {"valid": True, "environment": settings.ENVIRONMENT, "errors": [], "warnings": [], "variables": {}}

    required = {
        "DATABASE_URL": settings.DATABASE_URL or settings.POSTGRES_HOST,
        "INTERNAL_API_KEY": settings.internal_api_keys,
    }
    for name, value in required.items():
        status["variables"][name] = "✓ Set" if value else "✗ Missing"
        if not value:
            status["errors"].append(f"{name} is not set")

    optional = {
        "SENTRY_DSN": (settings.SENTRY_DSN, "Error tracking disabled"),
        "NOTIFICATION_SERVICE_URL": (settings.NOTIFICATION_SERVICE_URL, "Batch notifications are logged only"),
    }
    for name, (value, warning) in optional.items():
        status["variables"][name] = "✓ Set" if value else "⚠ Not set"
        if not value:
            status["warnings"].append(warning)

    if settings.is_production:
        status["errors"].extend(e for e in settings.validate_production_config() if e not in status["errors"])

    status["valid"] = not status["errors"]
    return status
