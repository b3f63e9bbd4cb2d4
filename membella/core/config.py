"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Membella Payments API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Database - REQUIRED
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_ECHO: bool = False

    # Security - REQUIRED (no defaults for sensitive values)
    SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"

    # CORS
    CORS_ORIGINS: list[str] = []

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Omise gateway
    OMISE_PUBLIC_KEY: str = ""
    OMISE_SECRET_KEY: str = ""
    OMISE_WEBHOOK_SECRET: Optional[str] = None
    OMISE_API_URL: str = "https://api.omise.co"
    OMISE_API_VERSION: str = "2019-05-29"
    OMISE_TIMEOUT_SECONDS: float = 30.0
    OMISE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Payments
    PAYMENT_CURRENCY: str = "THB"
    # Where the gateway sends the member back after 3-D Secure
    PAYMENT_RETURN_URI: Optional[str] = None

    # Rate limits (limits syntax, e.g. "10 per 15 minutes"), keyed by client address
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    RATE_LIMIT_CHECKOUT: str = "10 per 15 minutes"
    RATE_LIMIT_WEBHOOK: str = "100 per minute"

    # Status polling
    POLL_DEFAULT_ATTEMPTS: int = 60
    POLL_MAX_ATTEMPTS: int = 300
    POLL_INTERVAL_SECONDS: float = 1.0
    POLL_MAX_INTERVAL_SECONDS: float = 5.0

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
