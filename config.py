"""
Runtime settings, read from the environment (and an optional .env file).
"""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "storefront"
    admin_key: str = "demo-admin-key"

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    client_url: str = "http://localhost:5173"
    currency: str = "usd"

    log_level: str = "INFO"
    json_logs: bool = False

    inventory_max_retries: int = Field(3, ge=0)
    inventory_retry_base_delay: float = Field(0.1, ge=0)
    default_low_stock_threshold: int = Field(5, ge=0)

    gift_coupon_threshold: float = 200.0
    gift_coupon_percentage: float = 10.0
    gift_coupon_days: int = 30

    port: int = 8000


@lru_cache()
def get_settings() -> Settings:
    return Settings()
