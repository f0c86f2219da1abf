"""Application settings for the wide-event insight engine."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PROMPTS_DIR = Path(__file__).resolve().parents[2] / "insight" / "composer" / "templates"


class Settings(BaseSettings):
    """Engine settings, read from INSIGHT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="INSIGHT_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False

    # Session memory
    session_backend: Literal["memory", "redis"] = "memory"
    session_ttl_minutes: float = Field(default=30.0, gt=0)
    session_cleanup_interval_seconds: float = Field(default=300.0, gt=0)
    max_history_turns: int = Field(default=10, ge=1)
    reformulation_history_turns: int = Field(default=5, ge=1)

    # Latency buckets - upper bounds of the first four buckets, lower bound inclusive
    latency_thresholds_ms_str: str = Field(
        default="50,200,500,1000",
        validation_alias=AliasChoices("latency_thresholds_ms", "insight_latency_thresholds_ms"),
    )

    # Intent classifier vocabularies (appended to the built-in keywords)
    statistical_keywords_extra: str = ""
    conversational_keywords_extra: str = ""

    # Provider timeouts (seconds)
    embedding_timeout_seconds: float = Field(default=15.0, gt=0)
    rerank_timeout_seconds: float = Field(default=15.0, gt=0)
    synthesis_timeout_seconds: float = Field(default=30.0, gt=0)
    storage_timeout_seconds: float = Field(default=10.0, gt=0)

    # Retrieval
    search_top_k: int = Field(default=10, ge=1, le=100)
    rerank_top_k: int = Field(default=5, ge=1, le=50)
    grounding_verification_enabled: bool = True
    retrieval_fallback_answer: Optional[str] = None

    # Vector-result cache
    semantic_cache_enabled: bool = True
    semantic_cache_similarity: float = Field(default=0.95, ge=0.0, le=1.0)
    semantic_cache_ttl_seconds: float = 3600.0
    semantic_cache_time_range_ttl_seconds: float = 900.0

    # Embedding ingestion
    embedding_batch_chunk_size: int = Field(default=50, ge=1)
    embedding_batch_pause_ms: int = Field(default=500, ge=0)
    embedding_max_concurrency: int = Field(default=2, ge=1)
    embedding_source: str = "wide_events"

    # Models
    synthesis_model: str = "gpt-4o-mini"
    reranker_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    prompts_dir: Path = DEFAULT_PROMPTS_DIR

    # OpenAI and Redis credentials are read from environment variables directly
    # since they don't use the INSIGHT_ prefix:
    # - OPENAI_API_KEY
    # - OPENAI_EMBEDDING_MODEL
    # - REDIS_URL

    @field_validator("latency_thresholds_ms_str")
    @classmethod
    def validate_latency_thresholds(cls, v: str) -> str:
        """Require four strictly increasing, non-negative thresholds."""
        try:
            values = [float(part) for part in v.split(",") if part.strip()]
        except ValueError as e:
            raise ValueError(f"Latency thresholds must be numbers: {v}") from e
        if len(values) != 4:
            raise ValueError("Exactly four latency thresholds are required")
        if values[0] < 0 or any(b <= a for a, b in zip(values, values[1:])):
            raise ValueError("Latency thresholds must be non-negative and strictly increasing")
        return v

    @property
    def latency_thresholds_ms(self) -> Tuple[float, float, float, float]:
        """Parse latency thresholds from string."""
        values = [float(part) for part in self.latency_thresholds_ms_str.split(",") if part.strip()]
        return tuple(values)  # type: ignore[return-value]

    @property
    def statistical_keywords(self) -> list[str]:
        return _split_keywords(self.statistical_keywords_extra)

    @property
    def conversational_keywords(self) -> list[str]:
        return _split_keywords(self.conversational_keywords_extra)

    @property
    def session_ttl_seconds(self) -> float:
        return self.session_ttl_minutes * 60

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"


def _split_keywords(raw: str) -> list[str]:
    return [kw.strip().lower() for kw in raw.split(",") if kw.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
