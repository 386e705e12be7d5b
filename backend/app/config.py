"""Configuration settings for ScalingAd backend."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

from scalingad.commerce.config import CHARGE_MODEL_DESTINATION, CommerceConfig


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Stripe
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_api_version: str = "2023-10-16"
    stripe_account_country: str = "US"
    processor_timeout_seconds: float = 20.0

    # Escrow
    database_path: str | None = None  # Defaults to ~/.scalingad/escrow.db
    platform_fee_rate: Decimal = Decimal("0.10")
    default_currency: str = "USD"
    charge_model: str = CHARGE_MODEL_DESTINATION
    retry_backoff_seconds: float = 0.5
    admin_actor_ids: list[str] = []

    # App
    debug: bool = False
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def commerce_config(self) -> CommerceConfig:
        """Escrow core configuration derived from these settings."""
        return CommerceConfig(
            stripe_secret_key=self.stripe_secret_key,
            stripe_webhook_secret=self.stripe_webhook_secret,
            stripe_api_version=self.stripe_api_version,
            stripe_account_country=self.stripe_account_country,
            processor_timeout_seconds=self.processor_timeout_seconds,
            platform_fee_rate=self.platform_fee_rate,
            default_currency=self.default_currency.upper(),
            charge_model=self.charge_model,
            retry_backoff_seconds=self.retry_backoff_seconds,
            admin_actor_ids=frozenset(self.admin_actor_ids),
            db_path=Path(self.database_path).expanduser() if self.database_path else None,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
