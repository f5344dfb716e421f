"""
Shared configuration management for the admission-control service.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Shared bucket store
    redis_url: str = Field(default="redis://localhost:6379/0")
    store_backend: str = Field(default="redis")

    # Usage ledger
    postgres_dsn: str = Field(default="postgresql://localhost:5432/admission")
    ledger_backend: str = Field(default="postgres")

    # Rate limiting
    rate_limit_backend: str = Field(default="token_bucket")
    rate_limit_default_limit: int = Field(default=200)
    rate_limit_default_window_ms: int = Field(default=3_600_000)
    rate_limit_default_burst: Optional[int] = Field(default=None)
    rate_limit_max_buckets: int = Field(default=10000)
    rate_limit_trusted_proxies: int = Field(default=0)

    # Quota
    quota_idempotency_window_seconds: int = Field(default=60)

    # Account lockout
    lockout_max_attempts: int = Field(default=5)
    lockout_attempt_window_seconds: int = Field(default=300)
    lockout_duration_seconds: int = Field(default=900)

    # Sessions
    session_set_ttl_seconds: int = Field(default=30 * 24 * 3600)
    session_revocation_ttl_seconds: int = Field(default=7 * 24 * 3600)
    session_token_ttl_seconds: int = Field(default=7 * 24 * 3600)
    auth_secret: str = Field(default="")
    admin_api_key: str = Field(default="")

    # CSRF
    csrf_secret: str = Field(default="")
    csrf_token_expiry_seconds: int = Field(default=24 * 3600)
    csrf_cookie_secure: bool = Field(default=False)
    csrf_exempt_paths: List[str] = Field(default_factory=lambda: [
        "/api/auth/signin",
        "/api/auth/signup",
        "/api/auth/verify-email",
        "/api/auth/reset",
        "/api/webhook/payos",
        "/api/health",
    ])


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
