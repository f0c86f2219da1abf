from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Request

from insight.models import AnalysisResponse, AskRequest, ChatHistoryResponse
from insight.orchestrators.search_orchestrator import SearchOrchestrator, get_orchestrator

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/v1/search/ask", response_model=AnalysisResponse, tags=["Search"])
async def ask(
    request: Request,
    ask_request: AskRequest,
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
) -> AnalysisResponse:
    """Answer a question about the logs.

    Errors are mapped by the application's exception handlers:
    404 when nothing relevant was found, 422 when a statistical question
    cannot be answered by any metric, 502/504 when a provider fails.

    Example:
        ```bash
        curl -X POST http://localhost:8000/api/v1/search/ask \\
          -H "Content-Type: application/json" \\
          -d '{"query": "top error codes yesterday", "session_id": "s1"}'
        ```
    """
    logger.info(
        "Processing question",
        request_id=getattr(request.state, "request_id", "unknown"),
        query=ask_request.query[:100],
        session_id=ask_request.session_id,
    )
    result = await orchestrator.ask(ask_request.query, ask_request.session_id)
    return AnalysisResponse.from_result(result)


@router.get("/v1/search/history/{session_id}", response_model=ChatHistoryResponse, tags=["Search"])
async def chat_history(
    session_id: str,
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
) -> ChatHistoryResponse:
    history = await orchestrator.get_chat_history(session_id)
    return ChatHistoryResponse(
        session_id=session_id,
        turns=[AnalysisResponse.from_result(turn) for turn in history],
    )
