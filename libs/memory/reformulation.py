"""
Follow-up question rewriting.

Turns "why did it fail?" into "why did the checkout request with
GATEWAY_TIMEOUT fail?" using the last few turns, so retrieval never has
to resolve pronouns. Rewriting is an optimization: on any failure the
original question is used unchanged.
"""

import re
from typing import Sequence

import structlog

from insight.ports import SynthesisPort
from insight.schemas.analysis import AnalysisResult
from insight.tools.provider_call import call_provider
from libs.common.errors import ProviderError

logger = structlog.get_logger(__name__)

REFERENCE_PATTERN = re.compile(
    r"\b(it|its|that|this|those|these|they|them|the same|the error|the issue|the problem|the request|there)\b"
    r"|(그것|그거|이것|이거|저것|그 에러|그 오류|그 문제)",
    re.IGNORECASE,
)
_PUNCTUATION = re.compile(r"[?.!]")


def has_references(query: str) -> bool:
    return REFERENCE_PATTERN.search(query) is not None


def is_standalone(original: str, reformulated: str) -> bool:
    """
    True when rewriting did not materially change the question.

    Equal after normalization, the rewrite contains the original, or the
    original is more than 80% of the rewrite's length.
    """
    norm_original = _PUNCTUATION.sub("", original.lower().strip())
    norm_reformulated = _PUNCTUATION.sub("", reformulated.lower().strip())
    if not norm_reformulated:
        return True
    return (
        norm_original == norm_reformulated
        or norm_original in norm_reformulated
        or len(norm_original) / len(norm_reformulated) > 0.8
    )


class QueryReformulator:
    """
    Rewrites follow-up questions into standalone queries.

    Usage:
        reformulator = QueryReformulator(synthesis_port)
        query = await reformulator.reformulate("what caused it?", history)
    """

    def __init__(self, synthesis: SynthesisPort, timeout: float = 30.0, history_turns: int = 5):
        self.synthesis = synthesis
        self.timeout = timeout
        self.history_turns = history_turns

    async def reformulate(self, query: str, history: Sequence[AnalysisResult]) -> str:
        """
        Resolve references in ``query`` against the most recent turns.

        Returns:
            The standalone query, or ``query`` itself when no rewrite is needed
            or the rewrite failed
        """
        if not history or not has_references(query):
            return query

        recent = list(history[-self.history_turns:])
        try:
            reformulated = await call_provider(
                "synthesis", self.synthesis.reformulate_query(query, recent), self.timeout
            )
        except ProviderError as e:
            logger.warning("Query reformulation failed, using original query", error=str(e))
            return query

        reformulated = (reformulated or "").strip()
        if not reformulated:
            logger.warning("Query reformulation returned empty, using original query")
            return query

        if self.synthesis.detect_language(reformulated) != self.synthesis.detect_language(query):
            logger.warning("Query reformulation changed the language, using original query")
            return query

        if reformulated != query:
            logger.info(
                "Query reformulated",
                original=query[:100],
                reformulated=reformulated[:100],
                history_turns=len(recent),
            )
        return reformulated
