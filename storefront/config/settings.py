"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Stripe and Redis credentials are optional: a missing value switches the
    corresponding feature off instead of failing startup.
    """

    # Stripe Configuration
    stripe_secret_key: Optional[str] = Field(
        default=None, description="Stripe secret API key (sk_test_... / sk_live_...)"
    )
    stripe_publishable_key: Optional[str] = Field(
        default=None, description="Stripe publishable key exposed to the storefront"
    )
    stripe_webhook_secret: Optional[str] = Field(
        default=None, description="Stripe webhook signing secret (whsec_...)"
    )
    stripe_api_version: str = Field(default="2025-05-28.basil", description="Stripe API version")
    stripe_max_network_retries: int = Field(
        default=2, description="Retries performed by the Stripe client on network errors"
    )
    stripe_webhook_tolerance: int = Field(
        default=300, description="Accepted webhook timestamp skew (seconds)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./storefront.db", description="Async SQLAlchemy URL"
    )
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    cache_default_ttl: int = Field(default=3600, description="Default cache TTL (seconds)")
    cache_key_prefix: str = Field(default="storefront:", description="Namespace for cache keys")
    cache_write_timeout: float = Field(
        default=2.0, description="Upper bound for background cache writes (seconds)"
    )
    webhook_dedup_ttl: int = Field(
        default=86400 * 7, description="How long processed webhook ids are remembered"
    )

    # Application Configuration
    app_name: str = Field(default="storefront-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")
    frontend_url: str = Field(
        default="http://localhost:3000", description="Storefront URL for checkout redirects"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    admin_api_key: Optional[str] = Field(
        default=None, description="Key required by the admin endpoints"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate the Stripe secret key format when one is supplied."""
        if not v:
            return None
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("redis_url", "stripe_webhook_secret", "stripe_publishable_key")
    @classmethod
    def empty_as_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty environment values as unset."""
        return v or None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def payments_enabled(self) -> bool:
        """Payments are available only when a Stripe secret key is configured."""
        return bool(self.stripe_secret_key)

    @property
    def cache_enabled(self) -> bool:
        """Caching is available only when a Redis URL is configured."""
        return bool(self.redis_url)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return bool(self.stripe_secret_key and self.stripe_secret_key.startswith("sk_test_"))


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
