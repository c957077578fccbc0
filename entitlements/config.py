"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (EntitlementConfig, StripeConfig, ClientConfig) are
env-overridable via the double-underscore delimiter, e.g.:
    ENTITLEMENTS__PAST_DUE_GRACE_DAYS=3
    STRIPE__SECRET_KEY=sk_live_...
    CLIENT__REQUEST_TIMEOUT_SECONDS=20
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EntitlementConfig(BaseModel):
    """Server-side entitlement evaluation settings."""

    enabled: bool = True
    # Days a past_due Pro subscription keeps Pro benefits after period end
    past_due_grace_days: int = 7
    # Conditional-update retries when another writer bumps the same counter
    consume_max_retries: int = 5


class StripeConfig(BaseModel):
    """Stripe credentials, prices and redirect targets."""

    secret_key: str = ""
    webhook_secret: str = ""
    price_pro_monthly: str = ""
    price_pro_annual: str = ""
    currency: str = "usd"
    trial_period_days: int = 7
    app_url: str = "http://localhost:5173"

    @property
    def subscription_success_url(self) -> str:
        return f"{self.app_url}/dashboard?subscription=success"

    @property
    def subscription_cancel_url(self) -> str:
        return f"{self.app_url}/pricing?subscription=cancelled"

    @property
    def purchase_success_url(self) -> str:
        return f"{self.app_url}/dashboard?purchase=success"

    @property
    def purchase_cancel_url(self) -> str:
        return f"{self.app_url}/dashboard?purchase=cancelled"

    @property
    def portal_return_url(self) -> str:
        return f"{self.app_url}/profile"


class ClientConfig(BaseModel):
    """Client library settings (HTTP, local cache, reconciliation)."""

    api_base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 15.0
    cache_ttl_seconds: float = 300.0
    cache_dir: str = ".entitlements-cache"
    # Post-checkout polling: delays are base * 2**attempt (1, 2, 4, 8, 16s)
    reconcile_max_attempts: int = 5
    reconcile_base_delay_seconds: float = 1.0


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

    # Table names
    subscriptions_table: str = "subscriptions"
    usage_table: str = "feature_usage"
    wallets_table: str = "token_wallets"
    webhook_events_table: str = "webhook_events"

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:5173"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    entitlements: EntitlementConfig = Field(default_factory=EntitlementConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
