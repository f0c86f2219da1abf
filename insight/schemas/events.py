"""Wide events and the embedding-pipeline state built from them."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from insight.schemas.analysis import utcnow


class EmbeddingStatus(str, Enum):
    PENDING = "PENDING"
    EMBEDDED = "EMBEDDED"
    FAILED = "FAILED"


class EventUser(BaseModel):
    id: str
    role: str = "ANONYMOUS"


class EventError(BaseModel):
    code: str
    message: str = ""


class EventPerformance(BaseModel):
    duration_ms: Optional[float] = None


class WideEvent(BaseModel):
    """One structured record capturing the full context of a request."""

    request_id: str = Field(description="Request identifier")
    timestamp: datetime = Field(description="When the request was handled")
    service: str = Field(description="Owning service, e.g. 'payments'")
    route: str = Field(description="Route, optionally prefixed by the HTTP method")
    user: Optional[EventUser] = None
    error: Optional[EventError] = None
    performance: Optional[EventPerformance] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def duration_ms(self) -> Optional[float]:
        return self.performance.duration_ms if self.performance else None

    @property
    def has_error(self) -> bool:
        return self.error is not None and bool(self.error.code)


class EmbeddingResult(BaseModel):
    """Vector returned by the embedding provider."""

    model_config = {"frozen": True}

    embedding: List[float]
    model: str
    total_tokens: float = 0


class Watermark(BaseModel):
    """Position of the last event handled by the ingestion pipeline."""

    last_event_id: str
    last_event_timestamp: datetime


class LogEmbeddingEntity:
    """
    Embedding state for one log record.

    Status moves forward only: PENDING -> EMBEDDED or PENDING -> FAILED.
    ``requeue`` is the one explicit way back, used for targeted reprocessing.
    """

    def __init__(
        self,
        internal_id: str,
        request_id: str,
        timestamp: datetime,
        summary: str = "",
        status: EmbeddingStatus = EmbeddingStatus.PENDING,
        service: Optional[str] = None,
        model: Optional[str] = None,
        embedding: Optional[List[float]] = None,
        wide_event: Optional[WideEvent] = None,
    ):
        self.internal_id = internal_id
        self.request_id = request_id
        self.timestamp = timestamp
        self.summary = summary
        self.status = status
        self.service = service
        self.model = model
        self.embedding = embedding
        self.wide_event = wide_event
        self.failure_reason: Optional[str] = None

    @property
    def can_be_embedded(self) -> bool:
        return self.status == EmbeddingStatus.PENDING and bool(self.summary and self.summary.strip())

    def mark_embedded(self, result: EmbeddingResult) -> None:
        self._require_pending()
        self.embedding = list(result.embedding)
        self.model = result.model
        self.status = EmbeddingStatus.EMBEDDED

    def mark_failed(self, reason: str) -> None:
        self._require_pending()
        self.failure_reason = reason
        self.status = EmbeddingStatus.FAILED

    def requeue(self) -> None:
        """Put a failed log back to PENDING for an explicit retry."""
        if self.status == EmbeddingStatus.FAILED:
            self.status = EmbeddingStatus.PENDING
            self.failure_reason = None

    def _require_pending(self) -> None:
        if self.status != EmbeddingStatus.PENDING:
            raise ValueError(
                f"Log {self.request_id} is {self.status.value}; only PENDING logs can change status"
            )

    def __repr__(self) -> str:
        return f"LogEmbeddingEntity(request_id={self.request_id!r}, status={self.status.value})"


class EmbeddedLog(BaseModel):
    """Persisted vector for one log."""

    event_id: str
    request_id: str
    summary: str
    embedding: List[float]
    model: str
    service: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class VectorMatch(BaseModel):
    """One vector-similarity hit."""

    event_id: str
    request_id: str
    summary: str
    score: float
    service: Optional[str] = None
    timestamp: Optional[datetime] = None
