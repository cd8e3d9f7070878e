"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for all engine configuration.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: BILLING__RENEWAL_MAX_ATTEMPTS=5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("pricing-engine", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full async SQLAlchemy database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("pricing", description="Database name")
        username: str = Field("pricing", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        timezone: str = Field("UTC", description="Timezone")

        renewal_sweep_interval_seconds: int = Field(
            300, description="How often the renewal sweep runs"
        )
        reconciliation_interval_seconds: int = Field(
            3600, description="How often stuck charge reservations are reconciled"
        )
        task_soft_time_limit: int = Field(240, description="Soft time limit")
        task_time_limit: int = Field(300, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Billing engine configuration."""

        default_currency: str = Field("USD", description="Currency used when none is given")
        default_locale: str = Field("en_US", description="Locale for money formatting")

        # Lifecycle policies
        downgrade_policy: str = Field(
            "end_of_cycle", description="When downgrades take effect (end_of_cycle, immediate)"
        )
        negative_proration_policy: str = Field(
            "credit", description="What to do with a negative upgrade delta (credit, refund)"
        )
        cancel_on_full_refund: bool = Field(
            True, description="Cancel immediately when a full refund is issued"
        )

        # Renewal and dunning
        renewal_max_attempts: int = Field(
            3, description="Failed renewal attempts before a subscription expires"
        )
        renewal_retry_hours: list[int] = Field(
            default_factory=lambda: [24, 72],
            description="Hours to wait before each renewal retry",
        )

        # Concurrency
        lock_retry_attempts: int = Field(5, description="Attempts to claim a busy subscription")
        lock_retry_min_seconds: float = Field(0.05, description="Initial claim retry backoff")
        lock_retry_max_seconds: float = Field(1.0, description="Maximum claim retry backoff")
        lock_lease_seconds: int = Field(300, description="Seconds before a stale claim expires")

        # External call timeouts
        payment_timeout_seconds: float = Field(30.0, description="Charge/refund call timeout")
        currency_timeout_seconds: float = Field(5.0, description="Currency service timeout")
        notification_timeout_seconds: float = Field(5.0, description="Notification sink timeout")

        # Currency precision overrides, e.g. {"BHD": 3}
        currency_precision: dict[str, int] = Field(
            default_factory=dict, description="Minor-unit precision overrides"
        )

        # Reconciliation
        reservation_stale_minutes: int = Field(
            15, description="Age after which an open charge reservation is reconciled"
        )

        # Workers and the API build collaborators from this factory
        collaborators_factory: str | None = Field(
            None, description="Dotted path module:callable returning BillingCollaborators"
        )

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


# Convenience export
settings = get_settings()
