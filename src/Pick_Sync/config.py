"""Runtime settings loaded from ``PICKSYNC_*`` environment variables.

Every knob of the scan pipeline lives here so that the coordinator, the
analyzer and the adapters never read the environment themselves. A ``.env``
file in the working directory is honoured as well.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pick Sync configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PICKSYNC_",
        env_file=".env",
        extra="ignore",
    )

    db_path: str = "data/picksync.db"
    topic: str = "sportsbook:potd"

    # Source adapter
    subreddit: str = "sportsbook"
    source_api_host: str = "reddit34.p.rapidapi.com"
    source_api_key: str | None = None
    # Full scans only; incremental scans always fetch with the "new" sort.
    comment_sort: str = "top"
    source_timeout_seconds: float = 30.0
    source_requests_per_minute: float = Field(default=20.0, gt=0)

    # Analysis service adapter
    analysis_backend: Literal["openrouter", "ollama"] = "openrouter"
    analysis_api_key: str | None = None
    analysis_base_url: str = "https://openrouter.ai/api/v1"
    analysis_model: str = "x-ai/grok-4"
    ollama_host: str = "http://localhost:11434"
    analysis_temperature: float = 0.3
    analysis_max_tokens: int = 4000
    analysis_timeout_seconds: float = 60.0
    max_comment_chars: int = 500

    # Batch analyzer
    batch_size: int = Field(default=15, ge=1, le=45)
    inter_batch_delay_seconds: float = Field(default=1.0, ge=0.0)
    batch_cache_ttl_seconds: int = 6 * 60 * 60
    # Midpoint of the lowest confidence tier (40-54) used in the extraction prompt.
    default_confidence: int = Field(default=47, ge=0, le=100)

    # Coordinator / scheduler
    incremental: bool = False
    scan_cron: str = "0 12,20 * * *"
    timezone: str = "America/New_York"


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
