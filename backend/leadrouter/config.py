"""Application configuration."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql://leadrouter:leadrouter123@db:5432/leadrouter"
    DATABASE_POOL_TIMEOUT: int = 30
    DATABASE_STATEMENT_TIMEOUT_MS: int = 30000

    # Geocoding
    GOOGLE_MAPS_API_KEY: Optional[str] = None
    GEOCODER_TIMEOUT_SECONDS: float = 30.0

    # CRM write-back
    CRM_API_DOMAIN: str = "https://services.leadconnectorhq.com"
    CRM_CLIENT_ID: Optional[str] = None
    CRM_CLIENT_SECRET: Optional[str] = None
    CRM_TIMEOUT_SECONDS: float = 30.0
    CRM_DEFAULT_STAGE_ID: str = "new_lead"

    # Alerts
    SLACK_WEBHOOK_URL: Optional[str] = None
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 25
    ALERT_EMAIL_FROM: str = "routing-alerts@localhost"
    ADMIN_EMAIL: Optional[str] = None
    ALERT_TIMEOUT_SECONDS: float = 10.0

    # Routing
    DEFAULT_DAILY_CAPACITY: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
