from pydantic_settings import BaseSettings
from typing import List, Union
from pydantic import field_validator


class Settings(BaseSettings):
    APP_NAME: str = "HypeMarket Transaction Engine"
    APP_ENV: str = "development"
    APP_DEBUG: bool = False
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"

    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: Union[List[str], str] = ["http://localhost:3000", "http://localhost:5173"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            # Handle comma-separated string from environment variables
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    DATABASE_URL: str

    # Bearer credentials
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "hypemarket"
    JWT_AUDIENCE: str = "hypemarket-api"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440
    # Always re-read the account in capability checks instead of trusting the token role
    STRICT_ACTIVE_CHECK: bool = False

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_MAX_RETRIES: int = 2
    CURRENCY: str = "usd"

    # Marketplace policy (amounts in minor currency units)
    PLATFORM_FEE_PERCENT: int = 10
    OFFER_EXPIRY_DAYS: int = 7
    OFFER_MAX_PRICE_MULTIPLIER: int = 3
    MIN_OFFER_AMOUNT: int = 50
    DEFAULT_MAX_REVISIONS: int = 3
    AUTO_ACCEPT_DAYS: int = 3
    CLEARANCE_DAYS: int = 3
    PAYMENT_TIMEOUT_HOURS: int = 48
    MIN_WITHDRAWAL_AMOUNT: int = 500

    SCHEDULER_ENABLED: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
