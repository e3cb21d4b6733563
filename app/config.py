# app/config.py - Configuration management
import os

from dotenv import load_dotenv

load_dotenv()
from typing import Optional, Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "MedConsult Scheduling Core"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    port: int = Field(default=8000, alias="PORT")
    log_format: str = Field(default="json", alias="LOG_FORMAT")  # json | console
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")
    database_pool_size: int = Field(default=20, alias="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=30, alias="DATABASE_MAX_OVERFLOW")

    # Security (token decoding only; issuance lives elsewhere)
    secret_key: str = Field(..., alias="SECRET_KEY")
    refresh_secret_key: Optional[str] = Field(default=None, alias="REFRESH_SECRET_KEY")
    algorithm: str = Field(default="HS256", alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    refresh_token_expire_days: int = Field(default=7, alias="REFRESH_TOKEN_EXPIRE_DAYS")

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000", "http://localhost:8000"], alias="CORS_ORIGINS")

    # External storage (prescription / lab report attachments)
    storage_bucket: Optional[str] = Field(default=None, alias="STORAGE_BUCKET")
    storage_base_url: Optional[str] = Field(default=None, alias="STORAGE_BASE_URL")

    # Email (SendGrid)
    sendgrid_api_key: Optional[str] = Field(default=None, alias="SENDGRID_API_KEY")
    sender_email: str = Field(default="noreply@medconsult.local", alias="SENDER_EMAIL")
    email_template_dir: str = Field(default="app/templates/email", alias="EMAIL_TEMPLATE_DIR")

    # SMS (Twilio)
    twilio_account_sid: Optional[str] = Field(default=None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: Optional[str] = Field(default=None, alias="TWILIO_AUTH_TOKEN")
    twilio_from_number: Optional[str] = Field(default=None, alias="TWILIO_FROM_NUMBER")

    # Scheduling core
    default_timezone: str = Field(default="UTC", alias="DEFAULT_TIMEZONE")
    refund_window_days: int = Field(default=90, alias="REFUND_WINDOW_DAYS")
    invoice_due_days: int = Field(default=30, alias="INVOICE_DUE_DAYS")
    max_failed_logins: int = Field(default=5, alias="MAX_FAILED_LOGINS")
    lockout_minutes: int = Field(default=15, alias="LOCKOUT_MINUTES")
    max_request_bytes: int = Field(default=1_048_576, alias="MAX_REQUEST_BYTES")

    # Rate limiting (slowapi)
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    booking_rate_limit: str = Field(default="20/minute", alias="BOOKING_RATE_LIMIT")

    # Outbox worker
    outbox_max_attempts: int = Field(default=5, alias="OUTBOX_MAX_ATTEMPTS")
    outbox_poll_seconds: int = Field(default=15, alias="OUTBOX_POLL_SECONDS")
    outbox_batch_size: int = Field(default=50, alias="OUTBOX_BATCH_SIZE")
    outbox_backoff_seconds: int = Field(default=60, alias="OUTBOX_BACKOFF_SECONDS")

    # --- Validators ---
    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000", "http://localhost:8000"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite:///")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("secret_key")
    @classmethod
    def validate_key_length(cls, v):
        if not v or len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


# Environment-specific configurations
class DevelopmentConfig(Settings):
    """Development environment configuration"""
    debug: bool = True
    environment: str = "development"
    log_format: str = "console"


class ProductionConfig(Settings):
    """Production environment configuration"""
    debug: bool = False
    environment: str = "production"


class TestingConfig(Settings):
    """Testing environment configuration"""
    debug: bool = True
    environment: str = "testing"
    database_url: str = "sqlite:///./test.db"


def get_config_by_env(env: str) -> Settings:
    """Get configuration by environment name"""
    configs = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig
    }

    config_class = configs.get(env.lower(), Settings)
    return config_class()


# Note: Do not instantiate settings at import time to avoid failing
# on missing environment variables. Use `get_settings()` instead.
@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance for the current ENVIRONMENT"""
    return get_config_by_env(os.getenv("ENVIRONMENT", "development"))
