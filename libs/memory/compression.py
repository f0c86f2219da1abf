"""
Context compression for long conversations.

Keeps the live context window bounded: the most recent turns are kept
verbatim and everything older is folded into one synthetic summary turn
that still carries the sources of the turns it replaces.
"""

from typing import List, Sequence

import structlog

from insight.ports import SynthesisPort
from insight.schemas.analysis import AnalysisIntent, AnalysisResult
from insight.tools.provider_call import call_provider
from libs.common.errors import ProviderError

logger = structlog.get_logger(__name__)

SUMMARY_QUESTION = "[Previous conversation summary]"
SUMMARY_CONFIDENCE = 0.8


def fallback_summary(turn_count: int) -> str:
    return f"Previous conversation covered {turn_count} interactions."


def dedupe_sources(turns: Sequence[AnalysisResult]) -> List[str]:
    """Union of the turns' sources, first occurrence order."""
    seen = set()
    sources = []
    for turn in turns:
        for source in turn.sources:
            if source not in seen:
                seen.add(source)
                sources.append(source)
    return sources


class ContextCompressor:
    """
    Summarizes old turns while keeping recent ones verbatim.

    Usage:
        compressor = ContextCompressor(synthesis_port)
        compressed = await compressor.compress_history(history, max_turns=10)
    """

    def __init__(self, synthesis: SynthesisPort, timeout: float = 30.0):
        self.synthesis = synthesis
        self.timeout = timeout

    async def compress_history(
        self,
        history: Sequence[AnalysisResult],
        max_turns: int = 10,
    ) -> List[AnalysisResult]:
        """
        Compress history longer than ``max_turns``.

        Args:
            history: Turns in chronological order
            max_turns: Number of recent turns kept verbatim

        Returns:
            ``history`` unchanged when it fits, else ``[summary, *recent]``
        """
        if len(history) <= max_turns:
            return list(history)

        old = list(history[: len(history) - max_turns])
        recent = list(history[len(history) - max_turns:])

        try:
            summary = (await call_provider("synthesis", self.synthesis.summarize_history(old), self.timeout)).strip()
        except ProviderError as e:
            logger.warning("History summarization failed, using fallback", error=str(e), turns=len(old))
            summary = ""
        if not summary:
            summary = fallback_summary(len(old))

        summary_turn = AnalysisResult(
            session_id=recent[0].session_id or "" if recent else "",
            question=SUMMARY_QUESTION,
            intent=AnalysisIntent.UNKNOWN,
            answer=summary,
            sources=tuple(dedupe_sources(old)),
            confidence=SUMMARY_CONFIDENCE,
        )

        logger.debug(
            "History compressed",
            original_turns=len(history),
            summarized_turns=len(old),
            kept_turns=len(recent),
        )
        return [summary_turn, *recent]
