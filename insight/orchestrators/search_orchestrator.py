"""Search orchestrator for conversational log analysis.

This module implements the top-level ``ask`` use case. Each call runs one
pass through these steps and ends on the first success or failure:

1. Load session history (stateless when the session store is unreachable)
2. Compress history to a bounded context window
3. Classify intent and extract metadata filters
4. Conversational questions are answered from history; statistical
   questions go to the aggregation engine
5. Semantic questions: reformulate follow-ups, embed the query, vector
   search, rerank, ground the top candidates, synthesize and verify
6. Build the AnalysisResult and append it to the session

Nothing is written to the session until a turn has fully succeeded, so a
failed or cancelled call never leaves a partial turn behind.
"""

import asyncio
import time
from typing import Any, List, Optional, Sequence, Tuple

import structlog

from insight.aggregation.engine import AggregationEngine, sample_confidence
from insight.composer.prompts import NOT_ENOUGH_EVIDENCE, RULES
from insight.ports import EmbeddingPort, LogStoragePort, RerankPort, SynthesisPort
from insight.schemas.analysis import AnalysisIntent, AnalysisResult, QueryMetadata
from insight.schemas.events import VectorMatch, WideEvent
from insight.schemas.results import (
    AggregationOutcome,
    ConversationalRecall,
    NoMatchingAggregation,
    SemanticRetrieval,
    SynthesisAnswer,
)
from insight.tools.provider_call import call_provider
from insight.tools.query_metadata import QueryMetadataExtractor, preprocess_query
from libs.caching.semantic_cache import VectorResultCache
from libs.common.errors import (
    AggregationUnsatisfiable,
    CacheUnavailable,
    InsightError,
    ProviderError,
    RetrievalFailure,
)
from libs.common.metrics import OutcomeCounters
from libs.memory.compression import ContextCompressor, dedupe_sources
from libs.memory.reformulation import QueryReformulator, is_standalone
from libs.memory.session_history import SessionHistoryService

logger = structlog.get_logger(__name__)

ASK_OPERATION = "ask"
NO_HISTORY_ANSWER = "There is no previous conversation in this session yet."


class SearchOrchestrator:
    """
    Answers questions about wide-event logs.

    Usage:
        orchestrator = await get_orchestrator()
        result = await orchestrator.ask("why did checkout fail yesterday?", session_id="s1")
    """

    def __init__(
        self,
        extractor: QueryMetadataExtractor,
        sessions: SessionHistoryService,
        compressor: ContextCompressor,
        reformulator: QueryReformulator,
        aggregation: AggregationEngine,
        embedding: EmbeddingPort,
        reranker: RerankPort,
        synthesis: SynthesisPort,
        storage: LogStoragePort,
        vector_cache: Optional[VectorResultCache] = None,
        counters: Optional[OutcomeCounters] = None,
        search_top_k: int = 10,
        rerank_top_k: int = 5,
        max_history_turns: int = 10,
        embedding_timeout: float = 15.0,
        rerank_timeout: float = 15.0,
        synthesis_timeout: float = 30.0,
        storage_timeout: float = 10.0,
        grounding_verification_enabled: bool = True,
        retrieval_fallback_answer: Optional[str] = None,
        rules: str = RULES,
    ):
        self.extractor = extractor
        self.sessions = sessions
        self.compressor = compressor
        self.reformulator = reformulator
        self.aggregation = aggregation
        self.embedding = embedding
        self.reranker = reranker
        self.synthesis = synthesis
        self.storage = storage
        self.vector_cache = vector_cache
        self.counters = counters or OutcomeCounters()
        self.search_top_k = search_top_k
        self.rerank_top_k = rerank_top_k
        self.max_history_turns = max_history_turns
        self.embedding_timeout = embedding_timeout
        self.rerank_timeout = rerank_timeout
        self.synthesis_timeout = synthesis_timeout
        self.storage_timeout = storage_timeout
        self.grounding_verification_enabled = grounding_verification_enabled
        self.retrieval_fallback_answer = retrieval_fallback_answer
        self.rules = rules

    # ==========================================================================
    # Public API
    # ==========================================================================

    async def ask(self, query: str, session_id: Optional[str] = None) -> AnalysisResult:
        """
        Answer a question, optionally as part of a conversation.

        Raises:
            RetrievalFailure: Nothing relevant could be retrieved or grounded
            AggregationUnsatisfiable: A statistical question no template can answer
            ProviderTimeout, ProviderRejected: Synthesis failed
        """
        start_time = time.time()
        try:
            result = await self._ask(query, session_id)
        except InsightError as e:
            self.counters.record_failure(ASK_OPERATION, type(e).__name__)
            logger.warning(
                "Ask failed",
                session_id=session_id,
                error=str(e),
                error_code=e.error_code,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            raise
        except Exception as e:
            self.counters.record_failure(ASK_OPERATION, type(e).__name__)
            logger.error("Ask failed unexpectedly", session_id=session_id, error=str(e), exc_info=True)
            raise

        self.counters.record_success(ASK_OPERATION)
        self.counters.record_success(f"{ASK_OPERATION}.{result.intent.value.lower()}")
        logger.info(
            "Ask completed",
            session_id=session_id,
            intent=result.intent.value,
            sources=len(result.sources),
            confidence=result.confidence,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return result

    async def get_chat_history(self, session_id: str) -> List[AnalysisResult]:
        """Raw (uncompressed) history of a session; empty if there is none."""
        try:
            return await self.sessions.get_history(session_id)
        except CacheUnavailable as e:
            logger.warning("Session store unavailable, no history returned", session_id=session_id, error=str(e))
            return []

    # ==========================================================================
    # Pipeline
    # ==========================================================================

    async def _ask(self, query: str, session_id: Optional[str]) -> AnalysisResult:
        history, stateless = await self._load_history(session_id)
        compressed = await self.compressor.compress_history(history, self.max_history_turns)

        metadata, intent = self.extractor.analyze(query)
        logger.info(
            "Query analyzed",
            session_id=session_id,
            query=query[:100],
            intent=intent.value,
            history_turns=len(history),
            service=metadata.service,
            has_error=metadata.has_error,
        )

        if intent == AnalysisIntent.CONVERSATIONAL:
            answer, sources = await self._answer_conversational(query, history)
        elif intent == AnalysisIntent.STATISTICAL:
            answer, sources = await self._answer_statistical(query, metadata, compressed)
        else:
            try:
                answer, sources = await self._answer_semantic(query, metadata, compressed, session_id)
            except RetrievalFailure as e:
                if self.retrieval_fallback_answer is None:
                    raise
                logger.warning("Retrieval failed, returning configured fallback answer", error=str(e))
                return AnalysisResult(
                    session_id=session_id,
                    question=query,
                    intent=intent,
                    answer=self.retrieval_fallback_answer,
                    sources=(),
                    confidence=0.0,
                )

        result = AnalysisResult(
            session_id=session_id,
            question=query,
            intent=intent,
            answer=answer.answer,
            sources=tuple(sources),
            confidence=answer.confidence,
        )

        if session_id and not stateless:
            try:
                await self.sessions.update_session(session_id, result)
            except CacheUnavailable as e:
                logger.warning("Session store unavailable, turn not saved", session_id=session_id, error=str(e))
        return result

    async def _load_history(self, session_id: Optional[str]) -> Tuple[List[AnalysisResult], bool]:
        """Returns (history, stateless)."""
        if not session_id:
            return [], False
        try:
            return await self.sessions.get_history(session_id), False
        except CacheUnavailable as e:
            logger.warning("Session store unavailable, answering without context", session_id=session_id, error=str(e))
            return [], True

    async def _synthesize(self, question: str, context: Any, history: Sequence[AnalysisResult]) -> SynthesisAnswer:
        return await call_provider(
            "synthesis",
            self.synthesis.synthesize(
                question,
                context,
                self.rules,
                history=history,
                target_language=self.synthesis.detect_language(question),
            ),
            self.synthesis_timeout,
        )

    # ------------------------------------------------------------------
    # Conversational
    # ------------------------------------------------------------------

    async def _answer_conversational(
        self, query: str, history: List[AnalysisResult]
    ) -> Tuple[SynthesisAnswer, List[str]]:
        if not history:
            return SynthesisAnswer(answer=NO_HISTORY_ANSWER, confidence=1.0), []

        recent = history[-self.max_history_turns:]
        answer = await self._synthesize(query, ConversationalRecall(turns=len(recent)), recent)
        known = dedupe_sources(recent)
        return answer, [source for source in answer.sources if source in known]

    # ------------------------------------------------------------------
    # Statistical
    # ------------------------------------------------------------------

    async def _answer_statistical(
        self, query: str, metadata: QueryMetadata, history: List[AnalysisResult]
    ) -> Tuple[SynthesisAnswer, List[str]]:
        outcome = await self.aggregation.run(query, metadata)
        if isinstance(outcome, NoMatchingAggregation):
            raise AggregationUnsatisfiable(
                "No metric template can be fully parameterized for this question"
                + (f" (missing: {', '.join(outcome.missing_params)})" if outcome.missing_params else ""),
                template_ids=outcome.considered,
                missing_params=outcome.missing_params,
            )

        answer = await self._synthesize(query, outcome, history)
        ceiling = sample_confidence(outcome.sample_size)
        answer = answer.model_copy(update={"confidence": min(answer.confidence, ceiling)})
        return answer, self._select_sources(answer.sources, outcome.example_request_ids)

    # ------------------------------------------------------------------
    # Semantic
    # ------------------------------------------------------------------

    async def _answer_semantic(
        self,
        query: str,
        metadata: QueryMetadata,
        history: List[AnalysisResult],
        session_id: Optional[str],
    ) -> Tuple[SynthesisAnswer, List[str]]:
        retrieval_query = query
        synthesis_history = history
        if session_id and history:
            retrieval_query = await self.reformulator.reformulate(query, history)
            if is_standalone(query, retrieval_query):
                synthesis_history = []

        matches = await self._retrieve(retrieval_query, metadata)
        top = await self._rerank(retrieval_query, matches)
        grounded = self._post_filter(await self._ground(top), metadata)

        context = SemanticRetrieval(query=retrieval_query, matches=top, grounded_logs=grounded)
        answer = await self._synthesize(retrieval_query, context, synthesis_history)
        if self.grounding_verification_enabled:
            answer = await self._verify(retrieval_query, answer, grounded)
        return answer, self._select_sources(answer.sources, context.request_ids)

    async def _build_search_text(self, query: str, metadata: QueryMetadata) -> str:
        """Log-style narrative plus the canonical layer, aligned with stored summaries."""
        try:
            narrative = await call_provider(
                "synthesis", self.synthesis.transform_query_to_log_style(query), self.synthesis_timeout
            )
        except ProviderError as e:
            logger.warning("Log-style transformation failed, using query as is", error=str(e))
            narrative = ""
        return preprocess_query(narrative.strip() or query, metadata)

    async def _retrieve(self, query: str, metadata: QueryMetadata) -> List[VectorMatch]:
        start_time = time.time()
        search_text = await self._build_search_text(query, metadata)
        try:
            result = await call_provider(
                "embedding", self.embedding.create_embedding(search_text), self.embedding_timeout
            )
            matches = self.vector_cache.get(result.embedding, metadata) if self.vector_cache else None
            if matches is None:
                matches = await call_provider(
                    "storage",
                    self.storage.vector_search(result.embedding, self.search_top_k, metadata),
                    self.storage_timeout,
                )
                if self.vector_cache:
                    self.vector_cache.put(result.embedding, metadata, matches)
        except ProviderError as e:
            raise RetrievalFailure(f"Vector retrieval failed: {e}") from e

        if not matches:
            raise RetrievalFailure("No candidate logs found for the question")
        logger.info(
            "Candidates retrieved",
            candidates=len(matches),
            top_score=round(matches[0].score, 4),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return matches

    async def _rerank(self, query: str, matches: List[VectorMatch]) -> List[VectorMatch]:
        try:
            items = await call_provider(
                "rerank",
                self.reranker.rerank(query, [match.summary for match in matches], limit=self.rerank_top_k),
                self.rerank_timeout,
            )
        except ProviderError as e:
            raise RetrievalFailure(f"Reranking failed: {e}") from e

        top: List[VectorMatch] = []
        for item in items:
            if 0 <= item.index < len(matches) and matches[item.index] not in top:
                top.append(matches[item.index])
        if not top:
            raise RetrievalFailure("Reranking returned no usable candidates")
        return top[: self.rerank_top_k]

    async def _ground(self, matches: List[VectorMatch]) -> List[WideEvent]:
        """Fetch the full records of the reranked candidates in parallel."""
        fetched = await asyncio.gather(
            *(
                call_provider("storage", self.storage.get_log_by_event_id(match.event_id), self.storage_timeout)
                for match in matches
            ),
            return_exceptions=True,
        )

        logs: List[WideEvent] = []
        for match, outcome in zip(matches, fetched):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("Grounding fetch failed", event_id=match.event_id, error=str(outcome))
            elif outcome is not None:
                logs.append(outcome)

        if not logs:
            raise RetrievalFailure("Grounding failed for every candidate")
        return logs

    @staticmethod
    def _post_filter(logs: List[WideEvent], metadata: QueryMetadata) -> List[WideEvent]:
        """Apply error filters; keep the unfiltered set if nothing would remain."""
        filtered = logs
        if metadata.error_code:
            filtered = [log for log in filtered if log.error and log.error.code == metadata.error_code]
        elif metadata.has_error:
            filtered = [log for log in filtered if log.has_error]
        if not filtered:
            logger.debug("Post-filter removed every log, keeping unfiltered set", grounded=len(logs))
            return logs
        return filtered

    async def _verify(self, question: str, answer: SynthesisAnswer, logs: List[WideEvent]) -> SynthesisAnswer:
        grounding_context = [
            {
                "request_id": log.request_id,
                "timestamp": log.timestamp.isoformat(),
                "service": log.service,
                "route": log.route,
                "error_code": log.error.code if log.error else None,
                "error_message": log.error.message if log.error else None,
                "user_role": log.user.role if log.user else None,
                "duration_ms": log.duration_ms,
            }
            for log in logs
        ]
        try:
            verdict = await call_provider(
                "synthesis",
                self.synthesis.verify_grounding(question, answer.answer, grounding_context),
                self.synthesis_timeout,
            )
        except ProviderError as e:
            logger.warning("Grounding verification failed, keeping answer", error=str(e))
            return answer

        logger.info(
            "Grounding verified",
            status=verdict.status,
            action=verdict.action,
            adjustment=verdict.confidence_adjustment,
            unverified_claims=len(verdict.unverified_claims),
        )
        if verdict.action == "REJECT_ANSWER":
            reason = f" {verdict.reasoning}" if verdict.reasoning else ""
            return answer.model_copy(update={"answer": f"{NOT_ENOUGH_EVIDENCE}.{reason}", "confidence": 0.0})
        if verdict.action == "ADJUST_CONFIDENCE":
            return answer.model_copy(update={"confidence": answer.confidence * verdict.confidence_adjustment})
        return answer

    @staticmethod
    def _select_sources(cited: Sequence[str], available: Sequence[str]) -> List[str]:
        """Cited ids that are real evidence, in evidence order; all evidence if none were cited."""
        cited_set = set(cited)
        selected = [source for source in available if source in cited_set]
        return selected or list(dict.fromkeys(available))


# ==============================================================================
# Wiring
# ==============================================================================

_orchestrator: Optional[SearchOrchestrator] = None


async def get_orchestrator() -> SearchOrchestrator:
    """Get or create the global orchestrator from settings."""
    global _orchestrator
    if _orchestrator is None:
        from insight.composer.prompts import get_prompt_registry
        from insight.llm.synthesis import LangChainSynthesis
        from insight.tools.embedding_client import get_embedding_client
        from insight.tools.query_metadata import get_metadata_extractor
        from insight.tools.reranker import CrossEncoderReranker
        from libs.caching.redis_client import get_redis_client
        from libs.caching.redis_session_cache import RedisSessionCache
        from libs.caching.session_cache import InMemorySessionCache
        from libs.common.metrics import get_outcome_counters
        from libs.common.settings import get_settings
        from libs.memory.chat_history import InMemoryChatHistory, RedisChatHistory
        from libs.storage.log_store import get_log_store

        settings = get_settings()
        redis_client = await get_redis_client()

        if settings.session_backend == "redis" and redis_client is not None:
            cache = RedisSessionCache(redis_client)
        else:
            cache = InMemorySessionCache()
        chat_history = RedisChatHistory(redis_client) if redis_client is not None else InMemoryChatHistory()
        sessions = SessionHistoryService(
            cache,
            chat_history,
            ttl_seconds=settings.session_ttl_seconds,
            cleanup_interval_seconds=settings.session_cleanup_interval_seconds,
        )

        synthesis = LangChainSynthesis(settings.synthesis_model, registry=get_prompt_registry())
        storage = await get_log_store()
        vector_cache = None
        if settings.semantic_cache_enabled:
            vector_cache = VectorResultCache(
                similarity_threshold=settings.semantic_cache_similarity,
                default_ttl=settings.semantic_cache_ttl_seconds,
                time_range_ttl=settings.semantic_cache_time_range_ttl_seconds,
            )

        _orchestrator = SearchOrchestrator(
            extractor=get_metadata_extractor(),
            sessions=sessions,
            compressor=ContextCompressor(synthesis, timeout=settings.synthesis_timeout_seconds),
            reformulator=QueryReformulator(
                synthesis,
                timeout=settings.synthesis_timeout_seconds,
                history_turns=settings.reformulation_history_turns,
            ),
            aggregation=AggregationEngine(
                storage,
                latency_thresholds=settings.latency_thresholds_ms,
                timeout=settings.storage_timeout_seconds,
            ),
            embedding=get_embedding_client(),
            reranker=CrossEncoderReranker(settings.reranker_model),
            synthesis=synthesis,
            storage=storage,
            vector_cache=vector_cache,
            counters=get_outcome_counters(),
            search_top_k=settings.search_top_k,
            rerank_top_k=settings.rerank_top_k,
            max_history_turns=settings.max_history_turns,
            embedding_timeout=settings.embedding_timeout_seconds,
            rerank_timeout=settings.rerank_timeout_seconds,
            synthesis_timeout=settings.synthesis_timeout_seconds,
            storage_timeout=settings.storage_timeout_seconds,
            grounding_verification_enabled=settings.grounding_verification_enabled,
            retrieval_fallback_answer=settings.retrieval_fallback_answer,
        )
        logger.info(
            "Search orchestrator initialized",
            session_backend=type(cache).__name__,
            semantic_cache=vector_cache is not None,
        )
    return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None
