"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Cache settings loaded from environment variables."""

    # Durable mirror
    cache_namespace: str = "enhanced_cache_"
    durable_store_path: Optional[Path] = None  # None keeps the mirror in memory
    durable_quota_bytes: int = 5 * 1024 * 1024

    # Miss handling
    coalesce_misses: bool = True

    # Background tasks
    reconciliation_interval_seconds: float = 30.0
    metrics_interval_seconds: float = 60.0

    # Change feed (Supabase / PostgREST)
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    invalidation_events_table: str = "cache_invalidation_events"
    feed_request_timeout_seconds: float = 10.0

    # Number of live event ids remembered to skip on reconciliation replay
    live_event_window: int = 1024

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
