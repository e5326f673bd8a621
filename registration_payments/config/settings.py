"""Application settings using Pydantic for environment-based configuration."""
import re
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_HEX_KEY = re.compile(r"[0-9a-fA-F]{64}")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Credential vault
    encryption_key: str = Field(
        ..., description="AES-256 master key for stored processor tokens (64 hex chars)"
    )

    # Database Configuration
    database_url: str = Field(..., description="SQLAlchemy async database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Redis URL for webhook de-duplication"
    )
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long a processed notification id is remembered"
    )

    # Application Configuration
    app_name: str = Field(default="registration-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")
    app_url: str = Field(
        default="http://localhost:3000", description="Public base URL used for return URLs"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Mercado Pago
    mp_api_base_url: str = Field(
        default="https://api.mercadopago.com", description="Mercado Pago REST base URL"
    )
    mp_client_id: str = Field(default="", description="OAuth application client id")
    mp_client_secret: str = Field(default="", description="OAuth application client secret")
    mp_test_seller_token: Optional[str] = Field(
        default=None, description="Sandbox seller token used when an organizer has none"
    )
    mp_test_access_token: Optional[str] = Field(
        default=None, description="Sandbox application token, last-resort credential"
    )
    mp_webhook_secret: Optional[str] = Field(
        default=None, description="Secret used to sign payment notifications"
    )
    webhook_url: Optional[str] = Field(
        default=None, description="Overrides the notification URL sent to the processor"
    )
    disable_split_payments_test: bool = Field(
        default=False, description="Skip the marketplace fee for test credentials"
    )
    statement_descriptor: str = Field(default="EVENTS", description="Card statement text")
    currency: str = Field(default="BRL", description="ISO currency of checkout items")

    # Pricing
    platform_fee_mode: str = Field(default="percentage", description="percentage or flat")
    platform_fee_rate: Decimal = Field(
        default=Decimal("0.10"), description="Platform fee rate for percentage mode"
    )
    platform_fee_flat: Decimal = Field(
        default=Decimal("0.00"), description="Platform fee amount for flat mode"
    )

    # Processor calls
    processor_timeout_seconds: float = Field(
        default=10.0, description="Timeout for a single processor request (seconds)"
    )
    processor_max_attempts: int = Field(
        default=3, description="Attempts for transient processor errors"
    )
    processor_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )

    # Reconciliation
    sweep_batch_size: int = Field(default=100, description="Max pending orders per sweep")
    sweep_lookback_hours: int = Field(
        default=48, description="Default age window of pending orders to sweep"
    )
    sweep_concurrency: int = Field(default=5, description="Concurrent lookups during a sweep")
    sweep_interval_seconds: int = Field(
        default=300, description="Seconds between background sweeps"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        """Validate that the master key is 32 bytes encoded as hex."""
        v = v.strip()
        if not _HEX_KEY.fullmatch(v):
            raise ValueError("ENCRYPTION_KEY must be 64 hexadecimal characters (32 bytes)")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("platform_fee_mode")
    @classmethod
    def validate_platform_fee_mode(cls, v: str) -> str:
        """Validate platform fee mode."""
        v = v.lower()
        if v not in ("percentage", "flat"):
            raise ValueError("platform_fee_mode must be 'percentage' or 'flat'")
        return v

    @field_validator("platform_fee_rate", "platform_fee_flat")
    @classmethod
    def validate_non_negative(cls, v: Decimal) -> Decimal:
        """Platform fee settings cannot be negative."""
        if v < 0:
            raise ValueError("Platform fee settings must be non-negative")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def notification_url(self) -> str:
        """URL the processor posts payment notifications to."""
        if self.webhook_url:
            return self.webhook_url
        return f"{self.app_url.rstrip('/')}/api/webhooks/mercadopago"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
