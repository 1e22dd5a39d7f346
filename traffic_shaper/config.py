"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (or a .env file in dev).
Rate limit policies and the tier/model tables are static code tables; this
module only holds the deployment-specific knobs around them.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


class RateLimitBackend(StrEnum):
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False
    admin_api_key: SecretStr = Field(
        default=SecretStr("dev-admin-key-not-for-production"),
        description="Operator key required by the rate limit reset endpoint",
    )

    # ------------------------------------------------------------------ #
    # Rate Limiting
    # ------------------------------------------------------------------ #
    rate_limit_backend: RateLimitBackend = Field(
        default=RateLimitBackend.MEMORY,
        description="Bucket storage: in-process map or shared Redis",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for shared token buckets",
    )
    redis_socket_timeout_seconds: float = Field(
        default=0.05,
        gt=0,
        le=5,
        description="Per-call Redis timeout. Kept short: this is on the request path.",
    )
    redis_retry_cooldown_seconds: float = Field(
        default=5.0,
        ge=0,
        description="After a Redis failure, serve from memory for this long before retrying",
    )
    rate_limit_key_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="Retention for idle buckets in either backend",
    )
    rate_limit_max_cas_retries: int = Field(
        default=8,
        ge=1,
        le=100,
        description="Compare-and-set attempts per consume before denying",
    )

    # ------------------------------------------------------------------ #
    # Model Routing
    # ------------------------------------------------------------------ #
    routing_weight_quality: float = Field(default=0.4, ge=0, le=1)
    routing_weight_cost: float = Field(default=0.3, ge=0, le=1)
    routing_weight_availability: float = Field(default=0.3, ge=0, le=1)
    routing_default_availability: float = Field(
        default=0.8,
        ge=0,
        le=1,
        description="Availability score used when the metrics feed has no entry for a model",
    )
    routing_latency_warn_ms: float = Field(default=1500, gt=0)
    routing_latency_critical_ms: float = Field(default=3000, gt=0)
    routing_queue_depth_threshold: int = Field(default=100, ge=0)

    # ------------------------------------------------------------------ #
    # Derived / Computed
    # ------------------------------------------------------------------ #
    @model_validator(mode="after")
    def _set_debug_from_env(self) -> Settings:
        if self.environment == Environment.DEV:
            self.debug = True
        return self

    @model_validator(mode="after")
    def _validate_routing_weights(self) -> Settings:
        total = (
            self.routing_weight_quality
            + self.routing_weight_cost
            + self.routing_weight_availability
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(
                f"Routing weights must sum to 1.0, got {total:.6f}"
            )
        if self.routing_latency_warn_ms > self.routing_latency_critical_ms:
            raise ValueError(
                "routing_latency_warn_ms must not exceed routing_latency_critical_ms"
            )
        return self

    @model_validator(mode="after")
    def _validate_production_secrets(self) -> Settings:
        """Refuse to start in production with the development admin key."""
        if self.environment != Environment.PROD:
            return self

        admin_key = self.admin_api_key.get_secret_value().lower()
        if not admin_key or "not-for-production" in admin_key or admin_key in {
            "changeme",
            "admin",
            "secret",
        }:
            raise RuntimeError(
                "PRODUCTION STARTUP BLOCKED -- ADMIN_API_KEY contains an insecure "
                "default value. Set a strong, random key for production."
            )
        return self

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Use FastAPI dependency injection via Depends(get_settings) in endpoints,
    or call directly in non-request contexts (startup, scripts).
    """
    return Settings()
