"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.

Per-tenant store credentials (shared secret, service account, package
name) live on the ``apps`` table, not here.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")

    # Database
    DATABASE_URL: str = Field(default="")
    DATABASE_ECHO: bool = Field(default=False)

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Admin (HTTP Basic on /admin/*)
    ADMIN_USERNAME: str = Field(default="admin")
    ADMIN_PASSWORD: str = Field(default="")

    # CORS for the dashboard
    ALLOWED_ORIGINS: str = Field(default="http://localhost:5173,http://localhost:4173")

    # App Store (receipt-blob verification)
    APP_STORE_PRODUCTION_URL: str = Field(
        default="https://buy.itunes.apple.com/verifyReceipt"
    )
    APP_STORE_SANDBOX_URL: str = Field(
        default="https://sandbox.itunes.apple.com/verifyReceipt"
    )

    # Play Store (token-based verification)
    PLAY_STORE_API_BASE: str = Field(
        default="https://androidpublisher.googleapis.com/androidpublisher/v3"
    )
    GOOGLE_TOKEN_URI: str = Field(default="https://oauth2.googleapis.com/token")
    PLAY_STORE_SCOPE: str = Field(
        default="https://www.googleapis.com/auth/androidpublisher"
    )
    SERVICE_ACCOUNT_ASSERTION_TTL_SECONDS: int = Field(default=3600)

    # Outbound store calls
    STORE_REQUEST_TIMEOUT_SECONDS: float = Field(default=10.0)

    # Caching
    CUSTOMER_INFO_CACHE_TTL_SECONDS: int = Field(default=300)  # 5 minutes
    TENANT_CACHE_TTL_SECONDS: int = Field(default=60)

    # Webhooks
    WEBHOOK_DEFAULT_PERIOD_DAYS: int = Field(default=30)
    WEBHOOK_IDEMPOTENCY_TTL_SECONDS: int = Field(default=7 * 24 * 60 * 60)

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        if self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
        return self.DATABASE_URL

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def admin_configured(self) -> bool:
        return bool(self.ADMIN_PASSWORD.strip())

    @field_validator("STORE_REQUEST_TIMEOUT_SECONDS")
    @classmethod
    def validate_store_timeout(cls, v: float) -> float:
        """Outbound store calls must always be bounded."""
        if v <= 0:
            raise ValueError("STORE_REQUEST_TIMEOUT_SECONDS must be positive")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
