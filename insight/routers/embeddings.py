from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from insight.ingestion.embedding_pipeline import EmbeddingPipeline, get_embedding_pipeline
from insight.models import (
    EmbedByRequestIdResponse,
    ProcessEmbeddingsRequest,
    ProcessEmbeddingsResponse,
    SearchResponse,
    VectorMatchResponse,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/v1/embeddings/process", response_model=ProcessEmbeddingsResponse, tags=["Embeddings"])
async def process_pending(
    body: ProcessEmbeddingsRequest,
    pipeline: EmbeddingPipeline = Depends(get_embedding_pipeline),
) -> ProcessEmbeddingsResponse:
    """Embed a batch of logs that are pending embedding."""
    start_time = time.time()
    embedded = await pipeline.process_pending_logs(body.limit)
    return ProcessEmbeddingsResponse(embedded=embedded, duration_ms=round((time.time() - start_time) * 1000, 2))


@router.get("/v1/embeddings/search", response_model=SearchResponse, tags=["Embeddings"])
async def search(
    q: str = Query(min_length=1, max_length=2000, description="Search text"),
    limit: int = Query(default=5, ge=1, le=50),
    pipeline: EmbeddingPipeline = Depends(get_embedding_pipeline),
) -> SearchResponse:
    """Vector similarity search over embedded summaries, without synthesis."""
    matches = await pipeline.search(q, limit)
    return SearchResponse(
        query=q,
        matches=[
            VectorMatchResponse(
                request_id=match.request_id,
                summary=match.summary,
                score=match.score,
                service=match.service,
                timestamp=match.timestamp,
            )
            for match in matches
        ],
    )


@router.post("/v1/embeddings/{request_id}", response_model=EmbedByRequestIdResponse, tags=["Embeddings"])
async def embed_by_request_id(
    request_id: str,
    pipeline: EmbeddingPipeline = Depends(get_embedding_pipeline),
) -> EmbedByRequestIdResponse:
    """Embed (or re-embed a failed) log on demand."""
    embedded = await pipeline.embed_by_request_id(request_id)
    if embedded is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Log {request_id} not found")
    logger.info("Targeted embedding finished", request_id=request_id, embedded=embedded)
    return EmbedByRequestIdResponse(request_id=request_id, embedded=embedded)
