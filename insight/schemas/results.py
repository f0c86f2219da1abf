"""Typed results passed between pipeline steps.

Each intent produces its own tagged variant instead of an untyped list,
so the orchestrator and the synthesis prompt know exactly what they got.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from insight.schemas.events import VectorMatch, WideEvent


class RerankItem(BaseModel):
    index: int = Field(ge=0, description="Position in the candidate list")
    relevance_score: float


class SynthesisAnswer(BaseModel):
    answer: str
    confidence: float = Field(ge=0.0, le=1.0)
    sources: List[str] = Field(default_factory=list, description="Request ids cited by the answer")


class GroundingVerdict(BaseModel):
    status: Literal["VERIFIED", "PARTIALLY_VERIFIED", "NOT_VERIFIED"] = "NOT_VERIFIED"
    confidence_adjustment: float = Field(default=1.0, ge=0.0, le=1.0)
    unverified_claims: List[str] = Field(default_factory=list)
    action: Literal["KEEP_ANSWER", "ADJUST_CONFIDENCE", "REJECT_ANSWER"] = "KEEP_ANSWER"
    reasoning: str = ""


class SemanticRetrieval(BaseModel):
    """Vector hits after reranking, with their full source records."""

    kind: Literal["semantic"] = "semantic"
    query: str
    matches: List[VectorMatch] = Field(default_factory=list)
    grounded_logs: List[WideEvent] = Field(default_factory=list)

    @property
    def request_ids(self) -> List[str]:
        return [log.request_id for log in self.grounded_logs]


class AggregationOutcome(BaseModel):
    """Rows produced by one executed metric template."""

    kind: Literal["aggregation"] = "aggregation"
    template_id: str
    template_name: str
    params: Dict[str, Any] = Field(default_factory=dict)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    sample_size: int = Field(default=0, ge=0, description="Number of log records the rows were computed from")

    @property
    def example_request_ids(self) -> List[str]:
        ids: List[str] = []
        for row in self.rows:
            for example in row.get("examples", []) or []:
                request_id = example.get("request_id")
                if request_id and request_id not in ids:
                    ids.append(request_id)
        return ids


class NoMatchingAggregation(BaseModel):
    """No template could be fully parameterized from the question."""

    kind: Literal["no_aggregation"] = "no_aggregation"
    considered: List[str] = Field(default_factory=list)
    missing_params: List[str] = Field(default_factory=list)


class ConversationalRecall(BaseModel):
    """History turns used to answer a question about the conversation itself."""

    kind: Literal["conversational"] = "conversational"
    turns: int = 0


SynthesisContext = Union[SemanticRetrieval, AggregationOutcome, ConversationalRecall]
AggregationResult = Union[AggregationOutcome, NoMatchingAggregation]
