"""Request and response models for the insight HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from insight.schemas.analysis import AnalysisIntent, AnalysisResult


class AskRequest(BaseModel):
    """Request model for a question about the logs.

    Attributes:
        query: The question in natural language
        session_id: Conversation to continue; omit for a single-turn question
    """

    query: str = Field(
        min_length=1,
        max_length=2000,
        description="Question about system behavior",
        examples=["why did payments fail for premium users yesterday?"],
    )
    session_id: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Conversation session identifier",
        examples=["sess_7f3a"],
    )


class AnalysisResponse(BaseModel):
    """One answered question."""

    session_id: Optional[str] = Field(description="Session the answer belongs to")
    question: str = Field(description="Question as asked")
    intent: AnalysisIntent = Field(description="How the question was answered")
    answer: str = Field(description="Answer text")
    sources: List[str] = Field(description="Request ids used as evidence")
    confidence: float = Field(ge=0.0, le=1.0, description="Confidence in the answer")
    created_at: datetime = Field(description="When the answer was produced")

    @classmethod
    def from_result(cls, result: AnalysisResult) -> "AnalysisResponse":
        return cls(
            session_id=result.session_id,
            question=result.question,
            intent=result.intent,
            answer=result.answer,
            sources=list(result.sources),
            confidence=result.confidence,
            created_at=result.created_at,
        )


class ChatHistoryResponse(BaseModel):
    session_id: str
    turns: List[AnalysisResponse] = Field(default_factory=list)


class ProcessEmbeddingsRequest(BaseModel):
    limit: int = Field(default=100, ge=1, le=1000, description="Maximum number of pending logs to embed")


class ProcessEmbeddingsResponse(BaseModel):
    embedded: int = Field(ge=0, description="Number of logs embedded")
    duration_ms: float = Field(ge=0)


class EmbedByRequestIdResponse(BaseModel):
    request_id: str
    embedded: bool


class VectorMatchResponse(BaseModel):
    request_id: str
    summary: str
    score: float
    service: Optional[str] = None
    timestamp: Optional[datetime] = None


class SearchResponse(BaseModel):
    query: str
    matches: List[VectorMatchResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints.

    Attributes:
        status: Health status
        service: Service name
        version: Service version
        timestamp: Unix timestamp
        details: Optional additional details
    """

    status: Literal["healthy", "unhealthy"] = Field(description="Health status", examples=["healthy"])
    service: str = Field(description="Service name", examples=["insight"])
    version: str = Field(description="Service version", examples=["0.1.0"])
    timestamp: float = Field(description="Unix timestamp of the check")
    details: Optional[Dict[str, object]] = Field(default=None, description="Additional health details")


class ErrorResponse(BaseModel):
    """Standard error response model.

    Attributes:
        error_code: Error code
        message: Human-readable error message
        request_id: Request identifier for tracking
    """

    error_code: str = Field(description="Error code", examples=["RETRIEVAL_FAILURE"])
    message: str = Field(description="Human-readable error message")
    request_id: Optional[str] = Field(default=None, description="Request identifier for tracking")
