from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "PharmaSignal"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5

    # Providers
    perplexity_api_key: str | None = None
    perplexity_base_url: str = "https://api.perplexity.ai"

    # Research policy
    research_default_model: str = "sonar-pro"
    research_deep_model: str = "sonar-deep-research"
    research_deep_token_threshold: int = 350
    research_timeout_seconds: float = 60.0
    research_max_escalations: int = 2
    research_cache_ttl_seconds: int = 86400
    research_cache_max_bytes: int = 8_000_000
    research_max_cost_usd: float = 3.0

    # Sanity thresholds
    sanity_split_tolerance: float = 0.01
    sanity_revenue_multiple_min: float = 5.0
    sanity_revenue_multiple_max: float = 8.0
    sanity_rare_disease_threshold: int = 200_000
    sanity_max_years_to_peak: float = 20.0
    sanity_max_magnitude_gap: float = 2.0

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "research"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    # Sentry
    sentry_dsn: str | None = None

    # Security
    cors_origins: list[str] = []  # Empty by default for security

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
