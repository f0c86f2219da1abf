"""Data model for the insight engine."""

from insight.schemas.analysis import (
    AnalysisIntent,
    AnalysisResult,
    LatencyBucket,
    QueryMetadata,
    SessionCacheEntry,
    UserRole,
)
from insight.schemas.events import (
    EmbeddedLog,
    EmbeddingResult,
    EmbeddingStatus,
    LogEmbeddingEntity,
    VectorMatch,
    Watermark,
    WideEvent,
)

__all__ = [
    "AnalysisIntent",
    "AnalysisResult",
    "LatencyBucket",
    "QueryMetadata",
    "SessionCacheEntry",
    "UserRole",
    "EmbeddedLog",
    "EmbeddingResult",
    "EmbeddingStatus",
    "LogEmbeddingEntity",
    "VectorMatch",
    "Watermark",
    "WideEvent",
]
