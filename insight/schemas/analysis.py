"""Conversation-level data model.

An ``AnalysisResult`` is one answered question. Results are frozen once
built; session history is an ordered list of them held by the session
cache inside a ``SessionCacheEntry``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisIntent(str, Enum):
    """How a question is answered."""

    STATISTICAL = "STATISTICAL"
    SEMANTIC = "SEMANTIC"
    CONVERSATIONAL = "CONVERSATIONAL"
    UNKNOWN = "UNKNOWN"


class LatencyBucket(str, Enum):
    """Contiguous latency ranges; each range includes its lower bound."""

    UNDER_50MS = "<50ms"
    FROM_50_TO_200MS = "50-200ms"
    FROM_200_TO_500MS = "200-500ms"
    FROM_500_TO_1000MS = "500-1000ms"
    OVER_1000MS = ">1000ms"
    UNKNOWN = "unknown"


class UserRole(str, Enum):
    PREMIUM = "PREMIUM"
    ADMIN = "ADMIN"
    ANONYMOUS = "ANONYMOUS"
    USER = "USER"


class QueryMetadata(BaseModel):
    """Filters extracted from a question. Every field is optional."""

    start_time: Optional[datetime] = Field(default=None, description="Inclusive start of the time range")
    end_time: Optional[datetime] = Field(default=None, description="Inclusive end of the time range")
    service: Optional[str] = Field(default=None, description="Service name, e.g. 'payments'")
    route: Optional[str] = Field(default=None, description="Route path, e.g. '/payments/checkout'")
    error_code: Optional[str] = Field(default=None, description="Error code, e.g. 'GATEWAY_TIMEOUT'")
    has_error: bool = Field(default=False, description="Whether the question is about failures")
    user_role: Optional[UserRole] = Field(default=None, description="User role the question is scoped to")
    latency_bucket: Optional[LatencyBucket] = Field(default=None, description="Latency range mentioned")

    @property
    def has_time_range(self) -> bool:
        return self.start_time is not None and self.end_time is not None


class AnalysisResult(BaseModel):
    """One conversational turn: a question and its grounded answer."""

    model_config = ConfigDict(frozen=True)

    session_id: Optional[str] = Field(default=None, description="Session the turn belongs to")
    question: str = Field(description="Question as asked by the user")
    intent: AnalysisIntent = Field(description="Intent used to answer the question")
    answer: str = Field(description="Answer text")
    sources: Tuple[str, ...] = Field(default=(), description="Request ids used as evidence, in order")
    confidence: float = Field(ge=0.0, le=1.0, description="Confidence in the answer")
    created_at: datetime = Field(default_factory=utcnow, description="When the answer was produced")


class SessionCacheEntry(BaseModel):
    """Per-session conversation state."""

    history: List[AnalysisResult] = Field(default_factory=list)
    last_accessed: datetime = Field(default_factory=utcnow)
    ttl_seconds: float = Field(gt=0, description="Idle time after which the entry expires")

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """An entry is expired once more than ``ttl`` has passed since last access."""
        now = now or utcnow()
        return now - self.last_accessed > self.ttl

    def snapshot(self) -> "SessionCacheEntry":
        """Copy handed to callers so the cache keeps sole ownership of its entries."""
        return self.model_copy(update={"history": list(self.history)})
