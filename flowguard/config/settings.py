"""
Environment-aware configuration settings for flowguard.

Supports dev, test, and prod environments with appropriate defaults.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class IdempotencyBackend(str, Enum):
    """Where idempotency entries are stored."""

    MEMORY = "memory"
    REDIS = "redis"


class RedisSettings(BaseSettings):
    """Redis connection settings for the shared idempotency store."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis server hostname")
    port: int = Field(default=6379, description="Redis server port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")
    max_connections: int = Field(default=20, description="Maximum connection pool size")
    socket_timeout: float = Field(default=5.0, description="Socket timeout")
    socket_connect_timeout: float = Field(default=5.0, description="Connection timeout")
    key_prefix: str = Field(default="fg:idem:", description="Prefix for idempotency keys")


class ValidatorSettings(BaseSettings):
    """Limits of the target runtime checked by the graph validator."""

    model_config = SettingsConfigDict(env_prefix="VALIDATOR_")

    max_nodes: int = Field(
        default=50,
        ge=1,
        description="Node count above which execution may exceed the runtime ceiling",
    )
    runtime_ceiling_seconds: int = Field(
        default=360,
        description="Execution time ceiling of the target runtime (seconds)",
    )


class RetrySettings(BaseSettings):
    """Default retry policy settings."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    max_attempts: int = Field(default=3, ge=1, description="Maximum attempts per node execution")
    initial_delay_ms: int = Field(default=1000, ge=0, description="Initial retry delay (ms)")
    max_delay_ms: int = Field(default=30000, ge=0, description="Maximum retry delay (ms)")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff base")
    jitter_enabled: bool = Field(default=True, description="Add jitter to retry delays")
    retryable_errors: list[str] = Field(
        default_factory=lambda: ["TIMEOUT", "RATE_LIMIT", "NETWORK_ERROR", "SERVICE_UNAVAILABLE"],
        description="Error classes that are retried",
    )


class IdempotencySettings(BaseSettings):
    """Idempotency cache and execution record retention."""

    model_config = SettingsConfigDict(env_prefix="IDEMPOTENCY_")

    backend: IdempotencyBackend = Field(default=IdempotencyBackend.MEMORY)
    result_ttl_seconds: int = Field(default=24 * 60 * 60, description="Cached result lifetime")
    claim_ttl_seconds: int = Field(
        default=300,
        description="Lifetime of an in-flight claim; bounds how long a crashed executor blocks a key",
    )
    record_max_age_seconds: int = Field(
        default=7 * 24 * 60 * 60,
        description="Execution records older than this are evicted by cleanup",
    )
    cleanup_interval_seconds: float = Field(default=60 * 60, description="Maintenance interval")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Flowguard")
    environment: Environment = Field(default=Environment.DEV)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Sub-settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    validator: ValidatorSettings = Field(default_factory=ValidatorSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate and convert environment string to enum."""
        if isinstance(v, Environment):
            return v
        return Environment(v.lower())

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEV

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TEST

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PROD


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
