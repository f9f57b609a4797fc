"""
Application configuration using pydantic-settings.

Loads configuration from environment variables with sensible defaults.
"""
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Redis (Celery broker and result backend)
    redis_url: str = "redis://localhost:6379/0"

    # Application
    app_version: str = "1.0.0"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Error tracking (disabled when unset)
    sentry_dsn: Optional[str] = None
    sentry_traces_sample_rate: float = 0.1

    # Compiler
    inline_constants: bool = True
    unresolved_variable_policy: Literal["zero", "invalid"] = "zero"
    max_graph_depth: int = 100

    # Evaluator
    round_mode: Literal["half_even", "half_up"] = "half_even"
    result_precision: int = 10
    min_confidence_threshold: float = 0.0

    # Worker
    batch_chunk_size: int = 50


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

# Clear cache on module load
get_settings.cache_clear()
