"""
Configuration management for the Mosaic billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BillingConfig(BaseSettings):
    """
    Webhook verification configuration for each billing provider.

    An empty secret puts that provider in insecure mode (signature checks
    skipped) unless enforce_signatures is set, in which case the provider
    fails closed. Secrets are never logged.
    """

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    stripe_webhook_secret: str = Field(
        default="", description="Stripe endpoint signing secret (whsec_...)"
    )
    stripe_signature_tolerance_seconds: int = Field(
        default=300,
        ge=0,
        le=3600,
        description="Maximum age of a Stripe-Signature timestamp",
    )

    revenuecat_webhook_secret: str = Field(
        default="", description="HMAC-SHA256 secret for RevenueCat webhook bodies"
    )
    revenuecat_webhook_auth: str = Field(
        default="",
        description="Authorization header value configured in the RevenueCat dashboard",
    )

    appstore_webhook_secret: str = Field(
        default="", description="HMAC-SHA256 secret for relayed App Store notifications"
    )

    enforce_signatures: bool = Field(
        default=False,
        description="Reject webhooks for providers without a configured secret (production)",
    )

    premium_entitlement_id: str = Field(
        default="RC-Mosaic-AI",
        description="RevenueCat entitlement identifier that unlocks premium",
    )

    def secret_for(self, provider: str) -> str:
        """Shared secret configured for a provider ('' when unset)."""
        return {
            "stripe": self.stripe_webhook_secret,
            "revenuecat": self.revenuecat_webhook_secret,
            "appstore": self.appstore_webhook_secret,
        }.get(provider, "")

    def is_secured(self, provider: str) -> bool:
        """True when at least one authenticity check is configured for the provider."""
        if provider == "revenuecat" and self.revenuecat_webhook_auth:
            return True
        return bool(self.secret_for(provider))

    @property
    def insecure_providers(self) -> list[str]:
        """Providers whose webhooks are accepted without signature verification."""
        return [
            provider
            for provider in ("stripe", "revenuecat", "appstore")
            if not self.is_secured(provider)
        ]


class CreditConfig(BaseSettings):
    """Listen-credit amounts granted by billing events."""

    model_config = SettingsConfigDict(
        env_prefix="CREDITS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    recurring_bonus: int = Field(
        default=30, ge=0, description="Credits granted per newly observed subscription"
    )
    starter_credits: int = Field(
        default=30, ge=0, description="Credits a user receives at signup"
    )

    # One-time purchase SKUs (RevenueCat product ids, Stripe product keys and ids)
    one_time_products: dict[str, int] = Field(
        default_factory=lambda: {
            "com.mosaic.credits_10": 10,
            "credits10": 10,
            "prod_T1ugz4g83PNseG": 10,
        },
        description="Consumable product identifier -> credits granted",
    )

    @field_validator("one_time_products")
    @classmethod
    def validate_positive_grants(cls, v: dict[str, int]) -> dict[str, int]:
        for product_id, credits in v.items():
            if credits <= 0:
                raise ValueError(f"Credit grant for {product_id} must be positive, got {credits}")
        return v

    def credits_for_product(self, product_id: str | None) -> int | None:
        """Credits granted by a consumable product, None for unknown products."""
        if not product_id:
            return None
        return self.one_time_products.get(product_id)


class StorageConfig(BaseSettings):
    """Ledger storage configuration."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore")

    database_path: str = Field(
        default="./data/mosaic.db", description="Path to the SQLite ledger database"
    )


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    # Webhook bodies are small; anything larger is not a provider delivery
    max_request_body_size: int = Field(
        default=1 * 1024 * 1024,
        ge=1024,
        description="Maximum request body size in bytes (default: 1MB)",
    )

    consume_rate_limit: str = Field(
        default="60/minute", description="slowapi limit for listen-credit consumption"
    )


class CORSConfig(BaseSettings):
    """CORS configuration for API security."""

    model_config = SettingsConfigDict(env_prefix="CORS_", extra="ignore")

    allowed_origins: str = Field(
        default="*", description="Comma-separated list of allowed origins (* for all, ONLY for dev)"
    )
    allow_credentials: bool = Field(default=True)
    allowed_methods: str = Field(default="GET,POST,PUT,DELETE,PATCH,OPTIONS")
    allowed_headers: str = Field(default="*")
    max_age: int = Field(default=600, ge=0, description="Preflight cache duration in seconds")

    @property
    def origins_list(self) -> list[str]:
        """Parse comma-separated origins into list."""
        if self.allowed_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def methods_list(self) -> list[str]:
        return [method.strip() for method in self.allowed_methods.split(",") if method.strip()]

    @property
    def headers_list(self) -> list[str]:
        if self.allowed_headers == "*":
            return ["*"]
        return [header.strip() for header in self.allowed_headers.split(",") if header.strip()]


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")

    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(default=False, description="Colorize console output (dev only)")

    slow_request_warning_ms: float = Field(default=250.0, ge=0.0)
    slow_request_error_ms: float = Field(default=1000.0, ge=0.0)

    # Service metadata (injected into all logs)
    service_name: str = Field(default="mosaic-billing")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")


class Settings(BaseSettings):
    """Root configuration for the Mosaic billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    billing: BillingConfig = Field(default_factory=BillingConfig)
    credits: CreditConfig = Field(default_factory=CreditConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    cors: CORSConfig = Field(default_factory=CORSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Protects /admin endpoints; admin access is disabled when unset
    admin_api_key: str | None = Field(default=None)

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key_security(cls, v: str | None) -> str | None:
        """Reject placeholder admin keys. Never expose the key in logs."""
        if not v:
            return None

        placeholder_patterns = ["your-api-key-here", "admin", "example", "dummy", "changeme"]
        if any(pattern in v.lower() for pattern in placeholder_patterns):
            logging.warning(
                "admin_api_key appears to be a placeholder - admin endpoints will be BLOCKED"
            )
            return None

        if len(v) < 32:
            logging.warning("admin_api_key seems too short to be secure - use at least 32 characters")

        return v

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        for provider in self.billing.insecure_providers:
            if self.billing.enforce_signatures:
                logging.error(
                    f"No webhook secret configured for {provider} while signatures are "
                    f"enforced - {provider} webhooks will be rejected"
                )
            else:
                logging.warning(
                    f"No webhook secret configured for {provider} - signature verification "
                    f"SKIPPED (insecure mode)"
                )

        if self.logging.environment == "production" and not self.billing.enforce_signatures:
            logging.warning("Signature enforcement is disabled in production")

        if not self.credits.one_time_products:
            logging.warning("No one-time credit products configured - consumables grant nothing")


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
