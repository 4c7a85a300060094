"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum age of a signed webhook timestamp (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Catalog
    catalog_path: Optional[str] = Field(
        default=None, description="Path to the product catalog JSON file"
    )

    # Notification channels
    discord_webhook_url: Optional[str] = Field(
        default=None, description="Chat webhook URL for notifications"
    )
    sendgrid_api_key: Optional[str] = Field(default=None, description="SendGrid API key")
    sendgrid_api_url: str = Field(
        default="https://api.sendgrid.com/v3/mail/send", description="SendGrid send endpoint"
    )
    notification_email_from: str = Field(
        default="noreply@example.com", description="Sender address for email notifications"
    )
    promotion_api_url: Optional[str] = Field(
        default=None, description="Ad/promotion service endpoint"
    )
    http_timeout_seconds: float = Field(default=10.0, description="Outbound HTTP timeout")

    # Application Configuration
    app_name: str = Field(default="payment-events", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")

    # Provider retries
    gateway_max_attempts: int = Field(default=3, description="Attempts per provider call")
    gateway_base_delay: float = Field(
        default=1.0, description="Linear backoff step between attempts (seconds)"
    )
    gateway_deadline_seconds: float = Field(
        default=30.0, description="Overall deadline for one retried provider call (seconds)"
    )

    # Billing limits
    free_tier_max_charge: int = Field(
        default=100000, description="Largest single charge allowed on the free tier (minor units)"
    )
    charge_coupons: Dict[str, int] = Field(
        default_factory=lambda: {"HALFOFF": 50},
        description="Percent discounts for direct charges, keyed by coupon code",
    )

    # Job replay
    job_replay_stale_seconds: int = Field(
        default=300, description="Age after which a pending job is considered stuck"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ or sk_live_."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("charge_coupons")
    @classmethod
    def validate_coupons(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Discounts are whole percents that leave something to charge."""
        for code, percent in v.items():
            if not 0 < percent < 100:
                raise ValueError(f"Coupon {code} must discount between 1 and 99 percent")
        return {code.upper(): percent for code, percent in v.items()}

    @field_validator("gateway_max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """At least one attempt is always made."""
        if v < 1:
            raise ValueError("gateway_max_attempts must be >= 1")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Only the process entrypoints (API server, workers) call this; the core
    receives its settings explicitly through ``bootstrap.build_core``.
    """
    return Settings()
