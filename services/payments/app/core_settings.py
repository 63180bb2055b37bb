from pydantic import ValidationError
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

from app.domain.errors import ConfigurationError

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

REQUIRED_SETTINGS = (
    "MPESA_CONSUMER_KEY",
    "MPESA_CONSUMER_SECRET",
    "MPESA_PASSKEY",
    "MPESA_SHORTCODE",
    "MPESA_CALLBACK_URL",
    "ADMIN_NOTIFICATION_EMAIL",
)

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "storefront"
    POSTGRES_USER: str = "storefront"
    POSTGRES_PASSWORD: str = "storefront"
    # Overrides the POSTGRES_* URL when set (sqlite in tests)
    DATABASE_URL: Optional[str] = None

    SERVICE_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Daraja (M-Pesa) gateway
    MPESA_CONSUMER_KEY: str
    MPESA_CONSUMER_SECRET: str
    MPESA_PASSKEY: str
    MPESA_SHORTCODE: str
    MPESA_CALLBACK_URL: str
    MPESA_ENVIRONMENT: str = "sandbox"
    MPESA_BASE_URL: Optional[str] = None
    MPESA_TIMEOUT_SECONDS: float = 15.0
    MPESA_TRANSACTION_TYPE: str = "CustomerPayBillOnline"
    MPESA_TRANSACTION_DESC: str = "Order Payment"
    MPESA_CURRENCY: str = "KES"
    MPESA_MIN_AMOUNT: int = 1
    MPESA_MAX_AMOUNT: int = 150000

    # Used by the monthly archival job
    ADMIN_NOTIFICATION_EMAIL: str

    PAYMENT_POLL_INTERVAL_SECONDS: float = 5.0
    PAYMENT_WAIT_TIMEOUT_SECONDS: float = 120.0

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def mpesa_base_url(self) -> str:
        if self.MPESA_BASE_URL:
            return self.MPESA_BASE_URL.rstrip("/")
        if self.MPESA_ENVIRONMENT.lower() == "production":
            return PRODUCTION_BASE_URL
        return SANDBOX_BASE_URL

def load_settings(**overrides) -> Settings:
    """Build settings, failing fast on missing gateway configuration.

    Blank values count as missing: an empty passkey is no better than none.
    """
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        missing = sorted({str(err["loc"][0]) for err in e.errors() if err.get("type") == "missing"})
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}") from e
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    blank = [name for name in REQUIRED_SETTINGS if not str(getattr(settings, name)).strip()]
    if blank:
        raise ConfigurationError(f"Missing required configuration: {', '.join(blank)}")
    return settings

@lru_cache
def get_settings() -> Settings:
    return load_settings()
