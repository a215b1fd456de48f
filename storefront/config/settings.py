"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (asyncpg or aiosqlite)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (optional: idempotency cache and per-order locks)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    redis_lock_timeout: int = Field(default=30, description="Provisioning lock timeout (seconds)")

    # Application Configuration
    app_name: str = Field(default="storefront", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")
    default_currency: str = Field(default="USD", description="Storefront pricing currency")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally reachable base URL used for gateway callbacks",
    )
    storefront_base_url: str = Field(
        default="http://localhost:3000",
        description="Buyer-facing site used for success/cancel redirects",
    )

    # Webhooks
    allow_unsigned_webhooks: bool = Field(
        default=False,
        description="Accept webhooks for gateways without a configured secret (never in production)",
    )

    # Gateway HTTP
    gateway_http_timeout_seconds: float = Field(default=15.0, description="Gateway API timeout")
    gateway_retry_max_attempts: int = Field(default=3, description="Max gateway API attempts")

    # Checkout idempotency
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL (seconds)"
    )

    # Status poller
    status_poll_interval_seconds: int = Field(
        default=300, description="Interval between gateway status polls"
    )
    status_poll_min_age_seconds: int = Field(
        default=120, description="Only poll payment intents older than this"
    )
    status_poll_batch_size: int = Field(default=100, description="Intents per poll pass")

    # Credential provisioning
    provisioning_api_url: str = Field(
        default="http://localhost:9000", description="Credential issuance service URL"
    )
    provisioning_api_key: Optional[str] = Field(
        default=None, description="Credential issuance service API key"
    )
    provisioning_timeout_seconds: float = Field(
        default=30.0, description="Credential issuance request timeout"
    )
    provisioning_max_attempts: int = Field(
        default=5, description="Attempts per line item before giving up"
    )
    provisioning_sweep_interval_seconds: int = Field(
        default=600, description="Interval between provisioning retry sweeps"
    )

    # Notifications (outbox publisher target)
    notification_webhook_url: Optional[str] = Field(
        default=None, description="Endpoint receiving outbox events (order.confirmed, ...)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency must be a 3-letter code."""
        if len(v) != 3 or not v.isalpha():
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    @field_validator("public_base_url", "storefront_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
