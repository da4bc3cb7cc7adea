from __future__ import annotations

"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for all platform configuration.
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
    For nested settings, use double underscore: BILLING__GRACE_PERIOD_DAYS=7
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

    app_name: str = Field("rankpilot-platform", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("rankpilot", description="Database name")
        username: str = Field("rankpilot", description="Database username")
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
    # JWT & Authentication
    # ============================================================

    class JWTSettings(BaseModel):
        """JWT configuration."""

        secret_key: str = Field("change-me", description="JWT secret key")
        algorithm: str = Field("HS256", description="JWT algorithm")
        issuer: str | None = Field(None, description="Expected JWT issuer")
        audience: str | None = Field(None, description="Expected JWT audience")

    jwt: JWTSettings = JWTSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        task_soft_time_limit: int = Field(240, description="Soft time limit")
        task_time_limit: int = Field(300, description="Hard time limit")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log records")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Subscription billing and quota configuration."""

        # Stripe
        stripe_api_key: str = Field("", description="Stripe secret API key")
        stripe_webhook_secret: str = Field("", description="Stripe webhook signing secret")
        stripe_api_base_url: str = Field("https://api.stripe.com", description="Stripe API base")
        stripe_request_timeout_seconds: float = Field(
            5.0, description="Timeout for subscription re-fetches from Stripe"
        )
        webhook_tolerance_seconds: int = Field(
            300, description="Maximum age of a signed webhook timestamp"
        )

        # Plan mapping: Stripe price id -> internal tier name
        price_tiers: dict[str, str] = Field(
            default_factory=dict, description="Stripe price id to tier mapping"
        )
        account_metadata_key: str = Field(
            "account_id", description="Subscription metadata key holding the account id"
        )

        # Dunning
        grace_period_days: int = Field(7, description="Grace period after a failed payment")
        downgrade_tier: str = Field("starter", description="Tier applied when grace expires")
        expiry_policy: str = Field(
            "downgrade", description="Grace expiry policy: downgrade or suspend"
        )
        sweep_interval_seconds: int = Field(
            3600, description="How often the grace-period sweep runs"
        )
        high_value_tiers: list[str] = Field(
            default_factory=lambda: ["professional", "agency"],
            description="Tiers that raise an operator alert on payment failure",
        )

        # Quota overrides, e.g. {"starter": {"audit": 20}}; -1 means unlimited
        tier_limits: dict[str, dict[str, int]] = Field(
            default_factory=dict, description="Per-tier quota overrides"
        )

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
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


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
