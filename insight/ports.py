"""Ports to the external providers the engine depends on.

Implementations live in ``insight.tools`` (embedding, rerank),
``insight.llm`` (synthesis), ``libs.storage`` (log storage) and
``libs.memory.chat_history`` (chat history). Tests substitute AsyncMocks.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from insight.schemas.analysis import AnalysisResult, QueryMetadata
from insight.schemas.events import (
    EmbeddedLog,
    EmbeddingResult,
    LogEmbeddingEntity,
    VectorMatch,
    Watermark,
    WideEvent,
)
from insight.schemas.results import GroundingVerdict, RerankItem, SynthesisAnswer, SynthesisContext

KOREAN_PATTERN = re.compile(r"[ㄱ-ㅎㅏ-ㅣ가-힣]")


class EmbeddingPort(ABC):
    @abstractmethod
    async def create_embedding(self, text: str) -> EmbeddingResult:
        ...

    @abstractmethod
    async def create_batch_embeddings(self, texts: List[str]) -> List[EmbeddingResult]:
        """One result per input text, in input order."""


class RerankPort(ABC):
    @abstractmethod
    async def rerank(self, query: str, documents: List[str], limit: int = 5) -> List[RerankItem]:
        """Return the ``limit`` most relevant documents, best first, by index."""


class SynthesisPort(ABC):
    """Generative model operations used by the orchestrator and memory services."""

    @abstractmethod
    async def synthesize(
        self,
        question: str,
        context: SynthesisContext,
        rules: str,
        history: Sequence[AnalysisResult] = (),
        target_language: Optional[str] = None,
    ) -> SynthesisAnswer:
        ...

    @abstractmethod
    async def summarize_history(self, turns: Sequence[AnalysisResult]) -> str:
        ...

    @abstractmethod
    async def reformulate_query(self, query: str, history: Sequence[AnalysisResult]) -> str:
        ...

    @abstractmethod
    async def transform_query_to_log_style(self, query: str) -> str:
        ...

    @abstractmethod
    async def verify_grounding(
        self, question: str, answer: str, grounding_context: List[Dict[str, Any]]
    ) -> GroundingVerdict:
        ...

    def detect_language(self, text: str) -> str:
        """Script-based language detection: Korean or English."""
        return "Korean" if KOREAN_PATTERN.search(text or "") else "English"


class LogStoragePort(ABC):
    """Persisted wide events, their embeddings and aggregation over them."""

    @abstractmethod
    async def get_watermark(self, source: str) -> Optional[Watermark]:
        ...

    @abstractmethod
    async def find_logs_after_watermark(
        self, source: str, watermark: Optional[Watermark], limit: int
    ) -> List[LogEmbeddingEntity]:
        """Pending logs ordered by (timestamp, event id), strictly after the watermark."""

    @abstractmethod
    async def find_log_by_request_id(self, request_id: str) -> Optional[LogEmbeddingEntity]:
        ...

    @abstractmethod
    async def save_embeddings_and_update_watermark(
        self, source: str, results: List[EmbeddedLog], watermark: Optional[Watermark]
    ) -> None:
        ...

    @abstractmethod
    async def log_failure(self, event_id: str, request_id: str, reason: str) -> None:
        """Record an embedding failure and mark the log FAILED."""

    @abstractmethod
    async def requeue(self, event_id: str) -> None:
        """Put a FAILED log back to PENDING for targeted reprocessing."""

    @abstractmethod
    async def vector_search(
        self, embedding: List[float], limit: int, metadata: Optional[QueryMetadata] = None
    ) -> List[VectorMatch]:
        ...

    @abstractmethod
    async def get_log_by_event_id(self, event_id: str) -> Optional[WideEvent]:
        ...

    async def get_logs_by_event_ids(self, event_ids: Sequence[str]) -> List[WideEvent]:
        logs = []
        for event_id in event_ids:
            log = await self.get_log_by_event_id(event_id)
            if log is not None:
                logs.append(log)
        return logs

    @abstractmethod
    async def execute_aggregation(self, pipeline: Sequence[Any]) -> List[Dict[str, Any]]:
        """Run aggregation stages over the stored wide events."""


class ChatHistoryPort(ABC):
    """Durable record of every answered turn, independent of the session TTL."""

    @abstractmethod
    async def save(self, result: AnalysisResult) -> None:
        ...

    @abstractmethod
    async def find_by_session_id(self, session_id: str) -> List[AnalysisResult]:
        ...
