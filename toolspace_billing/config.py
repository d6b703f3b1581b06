"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (BillingConfig, StripeConfig) are env-overridable via
the double-underscore delimiter, e.g.:
    BILLING__CHECKOUT_FALLBACK_PERIOD_DAYS=14
    BILLING__MANUAL_PLAN_CHANGES_ENABLED=true
    STRIPE__WEBHOOK_SECRET=whsec_...
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingConfig(BaseModel):
    """Reconciliation and entitlement settings."""

    enabled: bool = True
    # None loads the pricing.json bundled with the package
    pricing_config_path: str | None = None
    # Provisional period granted on checkout until the subscription event lands
    checkout_fallback_period_days: int = 30
    # Max age of a Stripe-Signature timestamp
    webhook_tolerance_seconds: int = 300
    manual_plan_changes_enabled: bool = False
    profiles_table: str = "billing_profiles"
    usage_table: str = "usage_records"
    events_table: str = "billing_events"


class StripeConfig(BaseModel):
    """Stripe credentials and redirect URLs."""

    secret_key: str = ""
    webhook_secret: str = ""
    checkout_success_url: str = "http://localhost:3000/billing/success"
    checkout_cancel_url: str = "http://localhost:3000/billing/cancel"
    portal_return_url: str = "http://localhost:3000/account"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
