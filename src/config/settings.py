"""
Centralized settings management using pydantic-settings.

All environment variables and configuration values are defined here.
Use get_settings() to access the singleton settings instance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Required environment variables:
        - SUPABASE_URL: Supabase project URL
        - SUPABASE_SERVICE_KEY: Supabase service role key

    Optional environment variables:
        - SUPABASE_JWT_SECRET: Secret for verifying user tokens
        - LLM_API_KEY: Key for the OpenAI-compatible completion endpoint
        - LLM_BASE_URL / LLM_MODEL: Completion endpoint and model
        - ENVIRONMENT: Environment name (development, staging, production)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Environment
    # ==========================================================================
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Debug mode")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    # ==========================================================================
    # Server Configuration
    # ==========================================================================
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    cors_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        description="Allowed CORS origins"
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    # ==========================================================================
    # Supabase Configuration
    # ==========================================================================
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_service_key: str = Field(..., description="Supabase service role key")
    supabase_jwt_secret: str = Field(
        default="",
        description="JWT secret for token verification (from Supabase dashboard)"
    )

    # ==========================================================================
    # LLM (Tier-2 reranking + topic extraction)
    # ==========================================================================
    llm_api_key: str = Field(default="", description="API key for the completion endpoint")
    llm_base_url: str = Field(
        default="https://api.groq.com/openai/v1",
        description="OpenAI-compatible base URL"
    )
    llm_model: str = Field(
        default="llama-3.3-70b-versatile",
        description="Model used for feed reranking"
    )
    llm_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=2048, gt=0)
    llm_timeout_seconds: float = Field(
        default=8.0,
        description="Timeout for a single completion call (seconds)"
    )
    llm_rerank_enabled: bool = Field(
        default=True,
        description="Enable Tier-2 LLM reranking (Tier-1 order is kept if disabled or failing)"
    )
    llm_rerank_top_n: int = Field(default=50, gt=0, description="Posts sent to the LLM")
    topic_extraction_model: str = Field(
        default="llama-3.3-70b-versatile",
        description="Model used for post topic/keyword extraction"
    )

    # ==========================================================================
    # Feed Pipeline
    # ==========================================================================
    candidate_pool_size: int = Field(default=10000, gt=0)
    candidate_max_age_hours: int = Field(default=72, gt=0)
    feed_page_size: int = Field(default=20, gt=0)
    feed_cache_ttl_hours: float = Field(default=2.0, gt=0)
    interest_profile_stale_hours: float = Field(default=1.0, gt=0)
    interest_profile_cache_max_entries: int = Field(default=10000, gt=0)
    freshness_half_life_hours: float = Field(default=24.0, gt=0)
    realtime_batch_size: int = Field(default=10, gt=0)
    experiment_bucket_count: int = Field(default=10000, gt=0)

    # ==========================================================================
    # Event Tracking
    # ==========================================================================
    event_batch_max_size: int = Field(default=20, gt=0)
    event_flush_interval_seconds: float = Field(default=10.0, gt=0)
    event_ingest_url: str = Field(
        default="http://localhost:8080/api/feed/events",
        description="Endpoint the client-side tracker posts batches to"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Uses lru_cache to ensure only one instance is created.
    Settings are loaded from environment variables and .env file.

    Returns:
        Settings: The application settings instance

    Raises:
        ValidationError: If required environment variables are missing
    """
    env_file = Path(__file__).parent.parent.parent / ".env"
    if env_file.exists():
        os.environ.setdefault("ENV_FILE", str(env_file))

    return Settings(_env_file=env_file if env_file.exists() else None)


def get_settings_for_testing(**overrides) -> Settings:
    """
    Create a settings instance for testing with optional overrides.

    This bypasses the cache to allow different settings in tests.
    """
    test_defaults = {
        "supabase_url": "https://test.supabase.co",
        "supabase_service_key": "test-key",
        "environment": "testing",
        "debug": True,
    }
    test_defaults.update(overrides)

    return Settings(**test_defaults)
