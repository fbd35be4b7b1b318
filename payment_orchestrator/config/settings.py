"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="payment-orchestrator", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./payments.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    user_id_header: str = Field(
        default="X-User-ID", description="Header carrying the authenticated user id"
    )
    permissions_header: str = Field(
        default="X-User-Permissions",
        description="Header carrying the caller's permissions (comma-separated)",
    )
    refund_permission: str = Field(
        default="orders.update", description="Permission required to refund a payment"
    )

    # Redirects and callbacks
    frontend_url: str = Field(
        default="http://localhost:3000", description="Base URL of the storefront"
    )
    callback_base_url: str | None = Field(
        default=None,
        description="Public base URL of this API for gateway callbacks (defaults to FRONTEND_URL)",
    )
    default_locale: str = Field(default="fa", description="Locale for user-facing messages")

    # Gateways
    default_gateway: str = Field(default="zarinpal", description="Gateway used when none is requested")
    enabled_gateways: str = Field(
        default="zarinpal,idpay", description="Gateways to register (comma-separated)"
    )
    gateway_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Timeout for a single gateway HTTP call"
    )
    gateway_status_retry_attempts: int = Field(
        default=3, ge=1, description="Attempts for read-only status inquiries"
    )

    zarinpal_merchant_id: str = Field(default="", description="Zarinpal merchant id")
    zarinpal_access_token: str = Field(default="", description="Zarinpal v4 bearer token")
    zarinpal_sandbox: bool = Field(default=True, description="Use the Zarinpal sandbox")

    idpay_api_key: str = Field(default="", description="IDPay API key")
    idpay_sandbox: bool = Field(default=True, description="Use the IDPay sandbox")

    # Workers
    sweeper_stale_after_seconds: int = Field(
        default=900, description="Age after which a processing payment is inquired"
    )
    sweeper_interval_seconds: float = Field(default=300.0, description="Sweeper poll interval")
    sweeper_batch_size: int = Field(default=50, description="Records handled per sweep")
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox poll interval")

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

    @field_validator("default_gateway")
    @classmethod
    def normalize_gateway(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("default_locale")
    @classmethod
    def validate_locale(cls, v: str) -> str:
        if v not in ("fa", "en"):
            raise ValueError("Locale must be 'fa' or 'en'")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_enabled_gateways_list(self) -> List[str]:
        """Parse enabled gateway names from comma-separated string."""
        return [name.strip().lower() for name in self.enabled_gateways.split(",") if name.strip()]

    def callback_url_for(self, gateway_name: str) -> str:
        """URL a gateway sends the user back to after payment."""
        base = (self.callback_base_url or self.frontend_url).rstrip("/")
        return f"{base}/payments/callback/{gateway_name}"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
