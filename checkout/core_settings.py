from pydantic_settings import BaseSettings
from functools import lru_cache
from decimal import Decimal
from typing import Optional

class Settings(BaseSettings):
    SERVICE_NAME: str = "checkout-service"
    SERVICE_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Database - DATABASE_URL wins over the POSTGRES_* parts when set
    DATABASE_URL: Optional[str] = None
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "eci"
    POSTGRES_USER: str = "eci"
    POSTGRES_PASSWORD: str = "eci"
    AUTO_CREATE_TABLES: bool = True
    RUN_MIGRATIONS: bool = False

    # Pricing
    CURRENCY: str = "USD"
    SHIPPING_FLAT_RATE: Decimal = Decimal("15.00")
    FREE_SHIPPING_THRESHOLD: Optional[Decimal] = Decimal("100.00")
    TAX_ENABLED: bool = True
    TAX_COUNTRY: str = "US"

    # Payment gateway
    PAYMENT_GATEWAY: str = "paypal"  # paypal | fake
    PAYPAL_MODE: str = "sandbox"
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_WEBHOOK_ID: str = ""
    PAYPAL_BRAND_NAME: str = "ECI Storefront"
    FRONTEND_URL: str = "http://localhost:3000"
    FAKE_WEBHOOK_SECRET: str = "change-me"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_MAX_ATTEMPTS: int = 3
    GATEWAY_RETRY_BACKOFF_SECONDS: float = 0.5

    # Settlement policies
    REFUND_RECREDIT_GIFT_CARD: bool = False
    PENDING_ORDER_TTL_MINUTES: Optional[int] = None
    GIFT_CARD_VALIDITY_DAYS: int = 365

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def paypal_api_url(self) -> str:
        if self.PAYPAL_MODE == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

@lru_cache
def get_settings() -> Settings:
    return Settings()
