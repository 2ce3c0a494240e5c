"""Environment configuration using pydantic-settings."""

import os
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_CREDENTIAL_CACHE_TTL_SECONDS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_HALF_OPEN_MAX_PROBES,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_R2_BUCKET_NAME,
    DEFAULT_R2_STORAGE_DOMAIN,
    DEFAULT_RESET_TIMEOUT_MS,
    DEFAULT_TIMEOUT_MS,
)
from .models import CircuitBreakerConfig, RetryConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env.local" if os.getenv("ENVIRONMENT") == "local" else ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment Configuration
    environment: str = Field(default="local", description="Environment: local, dev, staging, prod")

    # R2 (primary backend)
    r2_account_id: Optional[str] = Field(default=None, description="Cloudflare account identifier")
    r2_access_key_id: Optional[str] = Field(default=None, description="R2 access key ID")
    r2_secret_access_key: Optional[str] = Field(default=None, description="R2 secret access key")
    r2_bucket_name: str = Field(default=DEFAULT_R2_BUCKET_NAME, description="R2 bucket name")
    r2_public_url: str = Field(default="", description="Public base URL serving the R2 bucket")
    r2_storage_domain: str = Field(default=DEFAULT_R2_STORAGE_DOMAIN, description="R2 S3 API domain")

    # Supabase (secondary backend and secret store)
    supabase_url: Optional[str] = Field(default=None, description="Supabase project URL")
    supabase_service_role_key: Optional[str] = Field(default=None, description="Supabase service role key")

    # Upload retry behaviour
    upload_max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    upload_base_delay_ms: int = Field(default=DEFAULT_BASE_DELAY_MS, ge=0)
    upload_max_delay_ms: int = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)
    upload_timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=DEFAULT_FAILURE_THRESHOLD, ge=1)
    circuit_reset_timeout_ms: int = Field(default=DEFAULT_RESET_TIMEOUT_MS, ge=0)
    circuit_half_open_max_probes: int = Field(default=DEFAULT_HALF_OPEN_MAX_PROBES, ge=1)

    # Credential cache
    credential_cache_ttl_seconds: float = Field(default=DEFAULT_CREDENTIAL_CACHE_TTL_SECONDS, ge=0)

    @property
    def is_local(self) -> bool:
        """Check if running in local environment."""
        return self.environment.lower() == "local"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "prod"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    def retry_config(self) -> RetryConfig:
        """Get upload retry configuration."""
        return RetryConfig(
            max_retries=self.upload_max_retries,
            base_delay_ms=self.upload_base_delay_ms,
            max_delay_ms=self.upload_max_delay_ms,
            timeout_ms=self.upload_timeout_ms,
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        """Get circuit breaker configuration."""
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            reset_timeout_ms=self.circuit_reset_timeout_ms,
            half_open_max_probes=self.circuit_half_open_max_probes,
        )


# Global settings instance
settings = Settings()
