"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.

Reconciliation thresholds live here so that matching and status policy
can be tuned per deployment without code changes.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator, model_validator
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
    PORT: int = Field(default=8000)

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Google Play (platform A)
    GOOGLE_PLAY_PACKAGE_NAME: str = Field(default="")
    GOOGLE_PLAY_API_URL: str = Field(
        default="https://androidpublisher.googleapis.com/androidpublisher/v3"
    )
    GOOGLE_PLAY_ACCESS_TOKEN: str = Field(default="")
    GOOGLE_PLAY_SETTLEMENT_URL: str = Field(default="")
    GOOGLE_PLAY_WEBHOOK_TOKEN: str = Field(
        default="",
        description="Shared token expected on Pub/Sub push requests",
    )

    # App Store (platform B)
    APP_STORE_BUNDLE_ID: str = Field(default="")
    APP_STORE_API_URL: str = Field(default="https://api.storekit.itunes.apple.com")
    APP_STORE_ACCESS_TOKEN: str = Field(default="")
    APP_STORE_SETTLEMENT_URL: str = Field(default="")
    APP_STORE_SIGNING_KEY: str = Field(
        default="",
        description="PEM public key used to verify signed notifications",
    )
    APP_STORE_SIGNING_ALGORITHMS: str = Field(default="ES256")

    # Platform HTTP calls
    PLATFORM_HTTP_TIMEOUT_SECONDS: float = Field(default=10.0)

    # Idempotency
    IDEMPOTENCY_TTL_SECONDS: int = Field(default=86400 * 7)  # 7 days

    # Reconciliation: pattern matching policy
    RECON_AMOUNT_TOLERANCE: Decimal = Field(default=Decimal("0.05"))
    RECON_DATE_WINDOW_DAYS: int = Field(default=1, ge=0)
    RECON_AMOUNT_WEIGHT: float = Field(default=0.6, ge=0, le=1)
    RECON_DATE_WEIGHT: float = Field(default=0.4, ge=0, le=1)
    RECON_MIN_CONFIDENCE: float = Field(default=0.7, ge=0, le=1)
    RECON_SAFE_CONFIDENCE: float = Field(default=0.9, ge=0, le=1)

    # Reconciliation: auto-resolution
    RECON_ROUNDING_TOLERANCE_ABS: Decimal = Field(default=Decimal("0.01"))
    RECON_ROUNDING_TOLERANCE_PCT: Decimal = Field(default=Decimal("0.001"))

    # Reconciliation: status bands
    RECON_PARTIAL_MATCH_RATE: float = Field(default=0.95)
    RECON_PARTIAL_MAX_UNRESOLVED: int = Field(default=2)
    RECON_MAJOR_MATCH_RATE: float = Field(default=0.80)

    # Reconciliation: severity assessment
    RECON_CRITICAL_AMOUNT: Decimal = Field(default=Decimal("1000.00"))
    RECON_CRITICAL_COUNT: int = Field(default=10)
    RECON_CRITICAL_MATCH_RATE: float = Field(default=0.85)

    # Reporting
    REPORT_SHARE_DECIMAL_PLACES: int = Field(default=2, ge=0)
    REPORT_CACHE_TTL_SECONDS: int = Field(default=3600)

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def app_store_algorithms_list(self) -> List[str]:
        """Parse APP_STORE_SIGNING_ALGORITHMS into a list."""
        return [alg.strip() for alg in self.APP_STORE_SIGNING_ALGORITHMS.split(",") if alg.strip()]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL:
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        return ""

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @field_validator("RECON_AMOUNT_TOLERANCE", "RECON_ROUNDING_TOLERANCE_ABS", "RECON_ROUNDING_TOLERANCE_PCT")
    @classmethod
    def validate_non_negative(cls, v: Decimal) -> Decimal:
        """Tolerances cannot be negative."""
        if v < 0:
            raise ValueError("tolerance must not be negative")
        return v

    @model_validator(mode="after")
    def validate_confidence_bands(self) -> "Settings":
        """The safe band must sit at or above the acceptance threshold."""
        if self.RECON_SAFE_CONFIDENCE < self.RECON_MIN_CONFIDENCE:
            raise ValueError("RECON_SAFE_CONFIDENCE must be >= RECON_MIN_CONFIDENCE")
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
