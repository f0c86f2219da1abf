"""Cross-encoder reranker for log summaries.

Scores (query, summary) pairs with a sentence-transformers CrossEncoder and
returns the best candidates by index. The model is loaded lazily in a worker
thread so the event loop is never blocked.

Usage:
    reranker = CrossEncoderReranker(settings.reranker_model)
    items = await reranker.rerank(query, summaries, limit=5)
"""

import asyncio
import time
from typing import Any, List, Optional

import structlog
from sentence_transformers import CrossEncoder

from insight.ports import RerankPort
from insight.schemas.results import RerankItem

logger = structlog.get_logger(__name__)

MAX_DOCUMENT_CHARS = 500


class CrossEncoderReranker(RerankPort):
    """RerankPort backed by a sentence-transformers CrossEncoder."""

    def __init__(self, model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2", model: Optional[Any] = None):
        self.model_name = model_name
        self.model = model
        self._load_lock = asyncio.Lock()

    async def _load_model(self) -> None:
        async with self._load_lock:
            if self.model is not None:
                return
            logger.info("Loading reranker model", model=self.model_name)
            start_time = time.time()
            loop = asyncio.get_running_loop()
            self.model = await loop.run_in_executor(
                None, lambda: CrossEncoder(self.model_name, max_length=256, device="cpu")
            )
            logger.info(
                "Reranker model loaded",
                model=self.model_name,
                load_time_ms=round((time.time() - start_time) * 1000, 2),
            )

    async def rerank(self, query: str, documents: List[str], limit: int = 5) -> List[RerankItem]:
        """Rerank documents by relevance to the query.

        Args:
            query: The search query
            documents: Candidate summaries
            limit: Number of items to return

        Returns:
            Up to ``limit`` items, best first, referring to ``documents`` by index
        """
        if not documents:
            return []

        await self._load_model()
        start_time = time.time()

        pairs = [[query, doc[:MAX_DOCUMENT_CHARS]] for doc in documents]
        loop = asyncio.get_running_loop()
        scores = await loop.run_in_executor(None, lambda: self.model.predict(pairs))

        items = [RerankItem(index=i, relevance_score=float(score)) for i, score in enumerate(scores)]
        items.sort(key=lambda item: item.relevance_score, reverse=True)
        top = items[: max(limit, 0)]

        logger.info(
            "Reranking completed",
            query_preview=query[:50],
            input_candidates=len(documents),
            output_results=len(top),
            top_score=top[0].relevance_score if top else 0,
            rerank_time_ms=round((time.time() - start_time) * 1000, 2),
        )
        return top
