"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Palette Quota API"
    api_version: str = "0.1.0"
    api_description: str = "Generation quota and billing service for the palette generator"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "palette-quota-api"

    # Payment Provider - Stripe
    stripe_secret_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...
    stripe_webhook_tolerance_seconds: int = 300

    # Stripe price identifiers (must match the Stripe dashboard)
    stripe_price_10_pack: str = "price_10pack"
    stripe_price_pro: str = "price_pro"
    stripe_price_unlimited: str = "price_unlimited"

    # Pricing Configuration
    credit_pack_size: int = 10  # Generations granted per credit pack
    pro_monthly_limit: int = 100
    free_generations_per_user: int = 1  # Lifetime free allotment

    # Quota enforcement
    quota_lock_timeout_ms: int = 5000
    quota_statement_timeout_ms: int = 10000
    generation_max_attempts: int = 3
    generation_retry_backoff_seconds: float = 0.05

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.free_generations_per_user < 0:
            errors.append("FREE_GENERATIONS_PER_USER cannot be negative")

        if self.credit_pack_size <= 0:
            errors.append("CREDIT_PACK_SIZE must be positive")

        if self.generation_max_attempts < 1:
            errors.append("GENERATION_MAX_ATTEMPTS must be at least 1")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def credit_packs(self) -> dict[str, int]:
        """Credit-pack price id -> generations granted."""
        return {self.stripe_price_10_pack: self.credit_pack_size}

    @property
    def subscription_limits(self) -> dict[str, int]:
        """Subscription price id -> monthly generation limit (-1 = unlimited)."""
        return {
            self.stripe_price_pro: self.pro_monthly_limit,
            self.stripe_price_unlimited: -1,
        }


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
