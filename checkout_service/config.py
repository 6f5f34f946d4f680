"""
Checkout Service — configuration

Settings are read from the environment (prefix CHECKOUT_) or a .env file.
The checkout thresholds are handed to the orchestrator as a CheckoutPolicy
instead of being scattered through the code as constants.
"""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class CheckoutPolicy:
    """Thresholds used by the validator, pricing engine and orchestrator."""

    price_drift_threshold_percent: Decimal = Decimal("10")
    tax_rate: Decimal = Decimal("0")
    order_number_prefix: str = "ORD"
    order_number_attempts: int = 5
    store_timeout_seconds: float = 5.0


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    model_config = SettingsConfigDict(
        env_prefix="CHECKOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Checkout Service"
    log_level: str = "INFO"

    # Storage
    database_url: str = "sqlite+aiosqlite:///./checkout.db"
    redis_url: str = "redis://localhost:6379"
    # create missing tables on startup; turn off where migrations own the schema
    create_schema: bool = True

    # Checkout policy
    order_number_prefix: str = "ORD"
    order_number_attempts: int = 5
    price_drift_threshold_percent: Decimal = Decimal("10")
    tax_rate: Decimal = Decimal("0")
    store_timeout_seconds: float = 5.0

    def checkout_policy(self) -> CheckoutPolicy:
        return CheckoutPolicy(
            price_drift_threshold_percent=self.price_drift_threshold_percent,
            tax_rate=self.tax_rate,
            order_number_prefix=self.order_number_prefix,
            order_number_attempts=self.order_number_attempts,
            store_timeout_seconds=self.store_timeout_seconds,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
