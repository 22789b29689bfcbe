# telemed/config.py - Environment-driven configuration
from dotenv import load_dotenv

load_dotenv()
import secrets
from typing import Optional, Union, List
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "Telemedicine Booking Service"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # Database. Unset means the service runs in local fallback mode.
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    # Security
    secret_key: str = Field(default_factory=lambda: secrets.token_urlsafe(32), alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # CORS
    cors_origins: Union[str, List[str]] = Field(default=["http://localhost:5173"], alias="CORS_ORIGINS")

    # Booking and payment rules
    payment_base_url: str = Field(default="http://localhost:5173", alias="PAYMENT_BASE_URL")
    payment_currency: str = Field(default="EUR", alias="PAYMENT_CURRENCY")
    payment_link_expiry_hours: int = Field(default=24, alias="PAYMENT_LINK_EXPIRY_HOURS")
    payment_reminder_intervals: Union[str, List[int]] = Field(default=[2, 12, 23], alias="PAYMENT_REMINDER_INTERVALS")
    conflict_window_hours: int = Field(default=4, alias="CONFLICT_WINDOW_HOURS")
    default_consultation_fee: float = Field(default=50.0, alias="DEFAULT_CONSULTATION_FEE")

    # Local fallback store
    local_cache_dir: str = Field(default=".telemed_cache", alias="LOCAL_CACHE_DIR")

    # Email (SendGrid)
    sendgrid_api_key: Optional[str] = Field(default=None, alias="SENDGRID_API_KEY")
    sender_email: str = Field(default="noreply@telemed.example.com", alias="SENDER_EMAIL")

    # --- Pydantic V2 Validators ---
    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:5173"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("payment_reminder_intervals", mode='before')
    @classmethod
    def parse_reminder_intervals(cls, v):
        if isinstance(v, str):
            return [int(part) for part in v.split(',') if part.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            return None
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def database_configured(self) -> bool:
        return bool(self.database_url)

    @property
    def email_enabled(self) -> bool:
        return bool(self.sendgrid_api_key)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

# Note: Do not instantiate settings at import time to avoid failing
# on malformed environment variables. Use `get_settings()` instead.
