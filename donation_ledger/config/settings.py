"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Confirmation locking
    lock_backend: str = Field(
        default="local", description="Keyed lock backend for confirmations (local/redis)"
    )
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    redis_lock_timeout: int = Field(default=30, description="Distributed lock timeout (seconds)")
    redis_lock_blocking_timeout: float = Field(
        default=10.0, description="Max wait for a distributed lock (seconds)"
    )

    # VNPay Configuration
    vnpay_tmn_code: str = Field(default="", description="VNPay terminal (merchant) code")
    vnpay_hash_secret: SecretStr = Field(
        default=SecretStr(""), description="VNPay secure hash secret"
    )

    # MoMo Configuration
    momo_partner_code: str = Field(default="", description="MoMo partner code")
    momo_access_key: SecretStr = Field(default=SecretStr(""), description="MoMo access key")
    momo_secret_key: SecretStr = Field(default=SecretStr(""), description="MoMo secret key")

    # Signature verification may only be switched off outside production
    signature_verification_enabled: bool = Field(
        default=True, description="Verify gateway signatures on inbound confirmations"
    )

    # Confirmation processing
    confirmation_retry_max_attempts: int = Field(
        default=3, description="Max attempts for a confirmation hitting a transient DB conflict"
    )
    confirmation_retry_base_delay: float = Field(
        default=0.1, description="Base delay for retry backoff (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="donation-ledger", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

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
    admin_api_key: SecretStr = Field(
        default=SecretStr(""), description="API key for manual confirmation and admin endpoints"
    )

    # Reconciliation
    reconciliation_hour: int = Field(
        default=2, ge=0, le=23, description="Hour of day the ledger reconciliation runs"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("lock_backend")
    @classmethod
    def validate_lock_backend(cls, v: str) -> str:
        """Validate lock backend name."""
        if v.lower() not in ("local", "redis"):
            raise ValueError("Invalid lock backend. Must be 'local' or 'redis'")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_environment(self) -> "Settings":
        """Reject configurations that weaken confirmation safety."""
        if self.is_production and not self.signature_verification_enabled:
            raise ValueError("Signature verification cannot be disabled in production")
        if self.lock_backend == "redis" and not self.redis_url:
            raise ValueError("redis_url is required when lock_backend is 'redis'")
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

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
