"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from dataclasses import dataclass

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


@dataclass(frozen=True)
class TierLimits:
    """Rate ceilings and monthly token allowance for one subscription tier."""

    per_minute: int
    per_hour: int
    monthly_tokens: int


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Counter store (rate limiting is disabled when empty)
    redis_url: str = ""
    redis_socket_timeout: float = 1.0

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    api_title: str = "Strat Coach Gateway"
    api_version: str = "1.0.0"
    api_description: str = "Authenticated streaming proxy for the coaching model"
    cors_origins: str = "http://localhost:5173"

    # Identity provider (JWKS-signed bearer tokens)
    jwks_url: str = ""
    jwt_issuer: str = ""
    jwt_audience: str = ""
    jwks_cache_ttl_seconds: int = 3600
    jwks_unknown_kid_refresh_seconds: int = 30
    jwt_leeway_seconds: int = 5

    # Upstream model
    anthropic_api_key: str = ""
    text_model: str = "claude-sonnet-4-20250514"
    vision_model: str = "claude-sonnet-4-20250514"
    default_max_tokens: int = 4096
    temperature: float = 1.0
    upstream_timeout_seconds: float = 120.0
    system_prompt_path: str = "coaching/TRADING-COACH-SYSTEM-PROMPT.md"
    guardrails_path: str = "coaching/THE-STRAT-GUARDRAILS.md"
    fallback_system_prompt: str = (
        "You are an AI trading assistant specialized in The Strat methodology."
    )

    # Relay
    relay_flush_grace_seconds: float = 5.0

    # Tier ceilings (requests) and monthly allowances (tokens)
    free_rate_per_minute: int = 10
    free_rate_per_hour: int = 50
    free_token_limit: int = 100_000
    pro_rate_per_minute: int = 30
    pro_rate_per_hour: int = 300
    pro_token_limit: int = 2_000_000
    enterprise_rate_per_minute: int = 60
    enterprise_rate_per_hour: int = 9999
    enterprise_token_limit: int = 10_000_000

    # Pricing in USD per million tokens
    price_input_per_million: float = 3.0
    price_output_per_million: float = 15.0
    price_cache_creation_per_million: float = 3.75
    price_cache_read_per_million: float = 0.3

    # Request constraints
    max_message_length: int = 50_000
    max_conversation_history: int = 20
    max_images: int = 5
    max_image_base64_length: int = 7_000_000  # ~5MB decoded
    supported_image_types: str = "image/png,image/jpeg,image/webp"
    max_output_tokens: int = 8192

    # Billing processor - overage reporting
    stripe_api_key: str = ""
    stripe_meter_event_name: str = "coach_overage_tokens"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "strat-coach-gateway"

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

        if self.max_images < 0 or self.max_conversation_history < 0:
            errors.append("Request constraints must be non-negative")

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
    def allowed_image_types(self) -> frozenset[str]:
        """Media types accepted for image parts."""
        return frozenset(t.strip() for t in self.supported_image_types.split(",") if t.strip())

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def tier_limits(self, tier: str) -> TierLimits:
        """Limits for a subscription tier; unknown tiers get the free limits."""
        if tier == "enterprise":
            return TierLimits(
                self.enterprise_rate_per_minute,
                self.enterprise_rate_per_hour,
                self.enterprise_token_limit,
            )
        if tier == "pro":
            return TierLimits(
                self.pro_rate_per_minute, self.pro_rate_per_hour, self.pro_token_limit
            )
        return TierLimits(
            self.free_rate_per_minute, self.free_rate_per_hour, self.free_token_limit
        )


# Global settings instance - validates at import time
settings = Settings()