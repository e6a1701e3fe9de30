"""Application settings for the Lexcase retrieval core."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from ``LEXCASE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEXCASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True
    debug: bool = False

    # CORS - use string to avoid JSON parsing issues
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("LEXCASE_CORS_ORIGINS", "cors_origins"),
    )

    # Conversation state
    max_history_length: int = Field(default=10, ge=1)
    max_total_tokens: int = Field(default=8000, ge=100)
    state_ttl_seconds: float = Field(default=30 * 60, gt=0)
    context_ttl_seconds: float = Field(default=5 * 60, gt=0)
    max_key_points: int = Field(default=5, ge=1)
    max_question_length: int = Field(default=2000, ge=1)

    # Rate limiting
    max_requests_per_minute: int = Field(default=60, ge=1)
    max_concurrent_requests: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_cleanup_seconds: float = Field(default=300.0, gt=0)

    # Retry policy
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_ms: int = Field(default=1000, ge=0)
    retry_max_delay_ms: int = Field(default=5000, ge=0)

    # Retrieval
    retrieval_char_budget: int = Field(default=10_000, ge=100)
    retrieval_cache_ttl_seconds: float = Field(default=30 * 60, gt=0)
    retrieval_cache_size: int = Field(default=2, ge=1)
    summary_search_limit: int = Field(default=3, ge=1)
    chunks_per_case: int = Field(default=5, ge=1)
    max_cases: int = Field(default=5, ge=1)

    # Completion service (OpenAI)
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-large"
    embedding_timeout_seconds: float = 10.0
    openai_max_tokens: int = 2000
    openai_temperature: float = 0.2
    completion_timeout_seconds: float = 60.0

    # Vector search (Milvus HTTP v2 API)
    milvus_endpoint: str | None = None
    milvus_token: str | None = None
    milvus_collection: str = "court_judgements"
    search_timeout_seconds: float = 30.0

    # Ingestion
    embedding_dimension: int = Field(default=3072, ge=1)
    ingest_chunk_size: int = Field(default=4000, ge=100)
    ingest_chunk_overlap: int = Field(default=200, ge=0)
    ingest_batch_size: int = Field(default=100, ge=1)
    ingest_concurrency: int = Field(default=5, ge=1)

    @field_validator("retry_max_delay_ms")
    @classmethod
    def max_delay_not_below_base(cls, v: int, info) -> int:
        """Reject a policy whose cap is smaller than its first delay."""
        base = info.data.get("retry_base_delay_ms", 0)
        if v < base:
            raise ValueError("retry_max_delay_ms must be >= retry_base_delay_ms")
        return v

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from string."""
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
