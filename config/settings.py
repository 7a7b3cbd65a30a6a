"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Cache and loader settings loaded from environment variables."""

    # Shared TTL store
    cache_max_size: int = 100
    cache_default_ttl_seconds: float = 300.0
    cache_cleanup_interval_seconds: float = 60.0

    # API cache facade
    api_cache_ttl_seconds: float = 300.0
    coalesce_timeout_seconds: float = 30.0

    # Load orchestrator defaults
    load_cache_ttl_seconds: float = 300.0
    load_retry_attempts: int = 3
    load_retry_delay_seconds: float = 1.0
    # No per-fetch timeout unless set
    load_timeout_seconds: Optional[float] = None

    # Progressive list loading
    page_size: int = 20

    # Hierarchical lazy loading tiers
    parent_ttl_seconds: float = 300.0
    collection_ttl_seconds: float = 300.0
    detail_ttl_seconds: float = 600.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
