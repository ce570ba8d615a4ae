"""
Configuration management for the Customer Intelligence Engine.

Uses Pydantic Settings for type-safe configuration.
"""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Environment
    environment: str = "development"
    log_level: str = "INFO"
    json_logs: bool = False

    # Admin access
    admin_key: str | None = None

    # Database (in-memory repository when unset)
    database_url: str | None = None

    # Completion service
    anthropic_api_key: str | None = None
    ai_model: str = "claude-3-5-haiku-20241022"
    ai_timeout_seconds: float = 20.0
    ai_max_tokens: int = 800

    # Rate limiting for completion calls
    ai_rate_limit_quota: int = 20
    ai_rate_limit_window_seconds: int = 3600  # 1 hour

    # Context gathering
    context_max_recent_orders: int = 10
    context_char_budget: int = 6000

    # Alerts
    alerts_max: int = 4

    # Scoring benchmarks
    benchmark_monthly_orders: float = 1.5
    fallback_average_spend: float = 300.0

    # Health score cache (disabled when redis_url is unset)
    redis_url: str | None = None
    health_cache_ttl_seconds: int = 900  # 15 minutes

    # CORS
    cors_origins: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def ai_configured(self) -> bool:
        return bool(self.anthropic_api_key)


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
