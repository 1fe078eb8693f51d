"""
Configuration management for the entitlement service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PADDLE_SANDBOX_API_URL = "https://sandbox-api.paddle.com"


class ConfigurationError(Exception):
    """
    A required setting is missing.

    Distinct from upstream failures: configuration errors are fixed by an
    operator, not by the end user retrying.
    """

    pass


class PaddleConfig(BaseSettings):
    """
    Paddle Billing API configuration.

    Security: API keys and endpoint secrets are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="PADDLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: str = Field(default="", description="Paddle API key (bearer token)")
    api_url: str = Field(
        default="https://api.paddle.com",
        description="Paddle API base URL (ignored when environment is sandbox)",
    )
    environment: Literal["production", "sandbox"] = Field(default="production")

    endpoint_secret_key: str = Field(
        default="", description="Webhook destination secret for Paddle-Signature verification"
    )
    customer_portal_url: str | None = Field(
        default=None,
        description="Static customer portal URL (preferred over creating portal sessions)",
    )
    signature_tolerance_seconds: int = Field(
        default=300,
        ge=0,
        le=86400,
        description="Max age or clock skew of a Paddle-Signature timestamp (0 disables the check)",
    )

    request_timeout_seconds: float = Field(
        default=120.0,
        ge=1.0,
        le=600.0,
        description="Timeout for Paddle API calls",
    )

    @field_validator("customer_portal_url")
    @classmethod
    def strip_portal_url(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("api_key", "endpoint_secret_key")
    @classmethod
    def validate_secret_placeholder(cls, v: str, info) -> str:
        """Treat obvious placeholders as unset."""
        if not v:
            return ""

        placeholder_patterns = ["your-api-key-here", "changeme", "dummy"]
        if any(pattern in v.lower() for pattern in placeholder_patterns):
            logging.warning(f"{info.field_name} appears to be a placeholder - treating as unset")
            return ""

        return v

    @property
    def base_url(self) -> str:
        if self.environment == "sandbox":
            return PADDLE_SANDBOX_API_URL
        return self.api_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        """Check if Paddle API calls can be made."""
        return bool(self.api_key)


class StorageConfig(BaseSettings):
    """Row store configuration."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore")

    db_path: str = Field(default="./data/entitlements.db")
    plan_cache_ttl_seconds: int = Field(
        default=300, ge=0, le=3600, description="TTL for cached catalog lookups"
    )


class EntitlementConfig(BaseSettings):
    """Entitlement and usage policy configuration."""

    model_config = SettingsConfigDict(env_prefix="ENTITLEMENT_", extra="ignore")

    free_plan_name: str = Field(default="Free")
    usage_warning_ratio: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Warn when a request consumes more than this share of remaining quota",
    )
    manageable_statuses: str = Field(
        default="active,trialing",
        description="Comma-separated subscription statuses that allow billing changes",
    )

    @property
    def manageable_status_set(self) -> frozenset[str]:
        return frozenset(
            status.strip() for status in self.manageable_statuses.split(",") if status.strip()
        )


class AuthConfig(BaseSettings):
    """Session token verification configuration."""

    model_config = SettingsConfigDict(env_prefix="AUTH_", extra="ignore")

    session_secret: str = Field(
        default="", description="Shared secret used by the auth layer to sign session tokens"
    )
    token_cache_ttl_seconds: int = Field(default=300, ge=0, le=3600)


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)
    workers: int = Field(default=1, ge=1)

    site_url: str | None = Field(
        default=None, description="Public site URL used to build billing return URLs"
    )
    record_rate_limit: str = Field(
        default="30/minute", description="Per-user rate limit for usage and billing mutations"
    )


class CORSConfig(BaseSettings):
    """CORS configuration for API security."""

    model_config = SettingsConfigDict(env_prefix="CORS_", extra="ignore")

    allowed_origins: str = Field(
        default="*", description="Comma-separated list of allowed origins (* for all, ONLY for dev)"
    )
    allow_credentials: bool = Field(default=True)
    allowed_methods: str = Field(default="GET,POST,PATCH,OPTIONS")
    allowed_headers: str = Field(default="*")
    max_age: int = Field(default=600, ge=0)

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
    colorized: bool = Field(default=False)

    slow_request_warning_ms: float = Field(default=500.0, ge=0.0)
    slow_request_error_ms: float = Field(default=5000.0, ge=0.0)

    service_name: str = Field(default="entitlements")
    service_version: str = Field(default="0.1.0")
    environment: Literal["development", "staging", "production"] = Field(default="development")


class Settings(BaseSettings):
    """Root configuration for the entitlement service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    paddle: PaddleConfig = Field(default_factory=PaddleConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    entitlement: EntitlementConfig = Field(default_factory=EntitlementConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    cors: CORSConfig = Field(default_factory=CORSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.paddle.is_configured:
            logging.warning("PADDLE_API_KEY not configured - paid subscriptions cannot be reconciled")

        if not self.paddle.endpoint_secret_key:
            logging.warning(
                "PADDLE_ENDPOINT_SECRET_KEY not configured - all webhooks will be rejected"
            )

        if not self.auth.session_secret:
            logging.warning("AUTH_SESSION_SECRET not configured - all API requests will be rejected")
        elif len(self.auth.session_secret) < 32:
            logging.warning("AUTH_SESSION_SECRET seems too short - use at least 32 characters")


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
