"""
Application Settings for Astropal

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.

Services receive a Settings instance through their constructor; the
cached provider below is only the composition root's source of truth.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PAID_TIERS = ("basic", "pro")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Every key has a safe default so the application imports without a
    .env file; production deployments override the secrets.
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration (JSON list in .env)
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: str = "sqlite+aiosqlite:///./astropal.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    # Key/value store (content cache, metrics, email queue)
    # Empty means an in-process store, suitable for dev and tests only
    redis_url: Optional[str] = None

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret_subscription: str = ""
    stripe_webhook_secret_payment: str = ""
    stripe_webhook_tolerance_seconds: int = 300
    stripe_basic_payment_link: str = "https://buy.stripe.com/astropal-basic"
    stripe_pro_payment_link: str = "https://buy.stripe.com/astropal-pro"
    stripe_price_tiers: dict[str, str] = {
        "price_basic_monthly": "basic",
        "price_pro_monthly": "pro",
    }
    # Tier granted when a price id cannot be resolved; raises an alert metric
    stripe_default_tier: str = "basic"

    # Webhook retry policy
    webhook_max_attempts: int = 3
    webhook_retry_base_delay: float = 1.0
    webhook_retry_max_delay: float = 5.0

    # Content providers
    grok_api_key: Optional[str] = None
    grok_base_url: str = "https://api.x.ai/v1"
    gemini_api_key: Optional[str] = None
    fallback_model: str = "gemini-2.5-flash"

    # Circuit breaker
    circuit_failure_threshold: int = 3
    circuit_reset_timeout_seconds: float = 300.0

    # Content cache
    content_cache_ttl_seconds: int = 48 * 60 * 60
    cache_fallback_content: bool = True

    # Scheduler (crontab syntax, UTC)
    scheduler_enabled: bool = False
    cron_trial_maintenance: str = "0 * * * *"
    cron_upgrade_reminders: str = "0 15 * * 1"
    cron_content_free: str = "0 6 * * *"
    cron_content_basic: str = "0 5 * * *"
    cron_content_pro: str = "0 4 * * *"
    cron_ledger_prune: str = "30 3 * * *"
    webhook_ledger_retention_days: int = 90

    # Admin endpoints
    admin_token: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_billing_tiers(self) -> "Settings":
        """Normalize the price map and reject tiers that cannot be purchased."""
        normalized = {}
        for price_id, tier in self.stripe_price_tiers.items():
            tier = tier.strip().lower()
            if tier not in PAID_TIERS:
                raise ValueError(
                    f"STRIPE_PRICE_TIERS maps {price_id} to unknown tier '{tier}'"
                )
            normalized[price_id] = tier
        self.stripe_price_tiers = normalized

        self.stripe_default_tier = self.stripe_default_tier.strip().lower()
        if self.stripe_default_tier not in PAID_TIERS:
            raise ValueError(
                f"STRIPE_DEFAULT_TIER must be one of {PAID_TIERS}, "
                f"got '{self.stripe_default_tier}'"
            )

        return self

    def webhook_secret_for(self, webhook_type: str) -> str:
        """Shared signing secret for a webhook endpoint type."""
        if webhook_type == "payment":
            return self.stripe_webhook_secret_payment
        return self.stripe_webhook_secret_subscription


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
