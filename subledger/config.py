"""
Configuration management for the Subledger billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlanLimitsConfig(BaseSettings):
    """
    Per-plan quota allocation.

    Loaded once at process start. Changing these values only affects future
    allocations and cycle resets, never balances already allocated.
    """

    model_config = SettingsConfigDict(
        env_prefix="PLAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # FREE tier
    free_input_tokens: int = Field(default=150_000, ge=0)
    free_output_tokens: int = Field(default=10_000, ge=0)
    free_monthly_units: int = Field(default=5, ge=0, description="Videos per cycle")

    # LITE tier (lowest paid tier)
    lite_input_tokens: int = Field(default=3_000_000, ge=0)
    lite_output_tokens: int = Field(default=200_000, ge=0)
    lite_monthly_units: int = Field(default=100, ge=0)

    # PRO tier
    pro_input_tokens: int = Field(default=9_000_000, ge=0)
    pro_output_tokens: int = Field(default=600_000, ge=0)
    pro_monthly_units: int = Field(default=300, ge=0)


class BillingConfig(BaseSettings):
    """Payment provider (Stripe) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    stripe_api_key: str = Field(default="", description="Stripe secret key (sk_...)")
    stripe_webhook_secret: str = Field(
        default="", description="Signing secret for the Stripe webhook endpoint (whsec_...)"
    )

    # Provider product identifiers per paid tier
    price_id_lite: str = Field(default="", description="Stripe price ID for the LITE plan")
    price_id_pro: str = Field(default="", description="Stripe price ID for the PRO plan")

    frontend_url: str = Field(
        default="http://localhost:3000",
        description="Frontend base URL; checkout returns to {frontend_url}/success",
    )
    default_checkout_tier: Literal["lite", "pro"] = Field(default="pro")

    provider_timeout_seconds: float = Field(
        default=10.0, gt=0.0, le=60.0, description="Upper bound for a single provider call"
    )

    strict_product_mapping: bool = Field(
        default=False,
        description=(
            "Fail the sync on an unrecognized provider product ID instead of "
            "mapping it to the lowest paid tier"
        ),
    )

    webhook_dedup_window_hours: int = Field(
        default=24,
        ge=1,
        le=168,
        description="How long a processed delivery ID is remembered (provider retry window)",
    )

    @field_validator("frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_configured(self) -> bool:
        """Check if Stripe credentials and both tier prices are present."""
        return bool(self.stripe_api_key and self.price_id_lite and self.price_id_pro)

    @property
    def return_url(self) -> str:
        return f"{self.frontend_url}/success"


class StorageConfig(BaseSettings):
    """Quota store location."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore")

    db_path: str = Field(default="./data/subledger.db", description="SQLite database file")


class NotificationConfig(BaseSettings):
    """Operator notification sink (cancellation requests)."""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_", extra="ignore")

    operator_webhook_url: str | None = Field(
        default=None,
        description="Endpoint receiving signed cancellation requests (None = log only)",
    )
    signing_secret: str | None = Field(
        default=None, description="HMAC secret for notification signatures (>= 32 chars)"
    )
    timeout_seconds: float = Field(default=5.0, gt=0.0, le=30.0)

    @field_validator("signing_secret")
    @classmethod
    def validate_signing_secret(cls, v: str | None) -> str | None:
        if v is not None and len(v) < 32:
            raise ValueError("signing_secret must be at least 32 characters")
        return v


class SweepConfig(BaseSettings):
    """Background sweep scheduling."""

    model_config = SettingsConfigDict(env_prefix="SWEEP_", extra="ignore")

    enabled: bool = Field(default=True, description="Run sweeps inside the API process")
    cycle_reset_interval_seconds: float = Field(
        default=3600.0, ge=1.0, description="Interval between due-cycle reset sweeps"
    )
    dedup_purge_interval_seconds: float = Field(
        default=900.0, ge=1.0, description="Interval between expired-delivery purges"
    )


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )

    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    # Service metadata (injected into all logs)
    service_name: str = Field(default="subledger", description="Service name for log aggregation")
    service_version: str = Field(default="0.1.0", description="Service version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )


class Settings(BaseSettings):
    """Root configuration for the Subledger service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    plans: PlanLimitsConfig = Field(default_factory=PlanLimitsConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    sweeps: SweepConfig = Field(default_factory=SweepConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Set ADMIN_API_KEY in environment to enable administrative routes
    admin_api_key: str | None = Field(
        default=None,
        description="API key for administrative routes (allocate, reset, manual sync)",
    )

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key_security(cls, v: str | None) -> str | None:
        """Reject placeholder admin keys. Never log the key itself."""
        if not v:
            return None

        placeholder_patterns = [
            "your-api-key-here",
            "admin",
            "example",
            "dummy",
            "changeme",
        ]

        v_lower = v.lower()
        if any(pattern in v_lower for pattern in placeholder_patterns):
            logging.warning(
                "admin_api_key appears to be a placeholder - admin routes will be BLOCKED"
            )
            return None

        if len(v) < 32:
            logging.warning(
                "admin_api_key seems too short to be secure - use at least 32 characters"
            )

        return v

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.billing.stripe_api_key:
            logging.warning("Stripe API key not configured - provider calls will fail")

        if not self.billing.stripe_webhook_secret:
            logging.warning("Stripe webhook secret not configured - webhooks will be rejected")

        if self.billing.price_id_lite and self.billing.price_id_lite == self.billing.price_id_pro:
            logging.warning(
                "LITE and PRO share the same price ID - every subscription will map to LITE"
            )

        if self.plans.lite_input_tokens < self.plans.free_input_tokens:
            logging.warning(
                f"LITE input allocation ({self.plans.lite_input_tokens}) is below FREE "
                f"({self.plans.free_input_tokens})"
            )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
