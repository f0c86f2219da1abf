"""
Synthesis adapter backed by an OpenAI chat model through LangChain.

Implements ``SynthesisPort``: answer synthesis, history summarization,
query reformulation, log-style query transformation and grounding
verification. Each operation renders its prompt from the registry (or the
built-in fallback) and runs ``prompt | llm``. Timeouts and typed errors are
applied by the callers through ``call_provider``.
"""

import json
import re
from typing import Any, Dict, List, Optional, Sequence

import structlog
from langchain_openai import ChatOpenAI
from pydantic import ValidationError

from insight.composer.prompts import (
    PromptTemplateRegistry,
    build_synthesis_inputs,
    format_grounding_context,
    format_history,
    get_prompt_template,
)
from insight.ports import SynthesisPort
from insight.schemas.analysis import AnalysisResult
from insight.schemas.results import GroundingVerdict, SynthesisAnswer, SynthesisContext
from libs.common.errors import ProviderRejected

logger = structlog.get_logger(__name__)

ANSWER_PATTERN = re.compile(r"Answer:[ \t]*(.*?)(?=\n\s*Confidence:|\n\s*Sources:|\Z)", re.DOTALL | re.IGNORECASE)
CONFIDENCE_PATTERN = re.compile(r"Confidence:\s*([0-9]*\.?[0-9]+)", re.IGNORECASE)
SOURCES_PATTERN = re.compile(r"Sources:\s*(.*)", re.IGNORECASE)
JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)

DEFAULT_CONFIDENCE = 0.5


def parse_synthesis_output(text: str) -> SynthesisAnswer:
    """
    Parse the ``Answer:`` / ``Confidence:`` / ``Sources:`` response format.

    Text without an ``Answer:`` marker is taken as the answer itself.

    Raises:
        ProviderRejected: The response is empty
    """
    text = (text or "").strip()
    if not text:
        raise ProviderRejected("synthesis", "empty response")

    answer_match = ANSWER_PATTERN.search(text)
    answer = answer_match.group(1).strip() if answer_match else text
    if not answer:
        raise ProviderRejected("synthesis", "response has an empty answer")

    confidence = DEFAULT_CONFIDENCE
    confidence_match = CONFIDENCE_PATTERN.search(text)
    if confidence_match:
        confidence = min(max(float(confidence_match.group(1)), 0.0), 1.0)

    sources: List[str] = []
    sources_match = SOURCES_PATTERN.search(text)
    if sources_match:
        raw = sources_match.group(1).strip()
        if raw.upper() != "NONE":
            sources = [s.strip().strip("[]`'\"") for s in raw.split(",") if s.strip()]

    return SynthesisAnswer(answer=answer, confidence=confidence, sources=[s for s in sources if s])


def parse_grounding_verdict(text: str) -> GroundingVerdict:
    """
    Parse the grounding JSON, accepting camelCase keys.

    Raises:
        ProviderRejected: No valid JSON object in the response
    """
    match = JSON_OBJECT_PATTERN.search(text or "")
    if not match:
        raise ProviderRejected("synthesis", "grounding verification returned no JSON")
    try:
        data: Dict[str, Any] = json.loads(match.group(0))
        return GroundingVerdict(
            status=data.get("status", "NOT_VERIFIED"),
            confidence_adjustment=data.get("confidence_adjustment", data.get("confidenceAdjustment", 1.0)),
            unverified_claims=data.get("unverified_claims", data.get("unverifiedClaims", [])) or [],
            action=data.get("action", "KEEP_ANSWER"),
            reasoning=data.get("reasoning", "") or "",
        )
    except (json.JSONDecodeError, ValidationError) as e:
        raise ProviderRejected("synthesis", f"invalid grounding verdict: {e}") from e


class LangChainSynthesis(SynthesisPort):
    """
    SynthesisPort over ``langchain_openai.ChatOpenAI``.

    Usage:
        synthesis = LangChainSynthesis(registry=get_prompt_registry())
        answer = await synthesis.synthesize(question, context, RULES)
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        registry: Optional[PromptTemplateRegistry] = None,
        llm: Optional[Any] = None,
        temperature: float = 0.1,
        max_tokens: int = 1500,
    ):
        self.registry = registry
        self.llm = llm or ChatOpenAI(model=model, temperature=temperature, max_tokens=max_tokens)

    async def _complete(self, template_type: str, variables: Dict[str, Any]) -> str:
        prompt = get_prompt_template(template_type, self.registry)
        chain = prompt | self.llm
        response = await chain.ainvoke(variables)
        content = getattr(response, "content", response)
        return content if isinstance(content, str) else str(content)

    async def synthesize(
        self,
        question: str,
        context: SynthesisContext,
        rules: str,
        history: Sequence[AnalysisResult] = (),
        target_language: Optional[str] = None,
    ) -> SynthesisAnswer:
        variables = build_synthesis_inputs(question, context, rules, history, target_language)
        text = await self._complete("semantic-synthesis", variables)
        result = parse_synthesis_output(text)
        logger.debug(
            "Answer synthesized",
            context_type=variables["context_type"],
            confidence=result.confidence,
            cited_sources=len(result.sources),
        )
        return result

    async def summarize_history(self, turns: Sequence[AnalysisResult]) -> str:
        return (await self._complete("history-summarization", {"history_text": format_history(turns)})).strip()

    async def reformulate_query(self, query: str, history: Sequence[AnalysisResult]) -> str:
        text = await self._complete("query-reformulation", {"query": query, "history_text": format_history(history)})
        return text.strip().strip('"')

    async def transform_query_to_log_style(self, query: str) -> str:
        return (await self._complete("log-style-transformation", {"query": query})).strip()

    async def verify_grounding(
        self, question: str, answer: str, grounding_context: List[Dict[str, Any]]
    ) -> GroundingVerdict:
        text = await self._complete(
            "grounding-verification",
            {
                "question": question,
                "answer": answer,
                "grounding_context": format_grounding_context(grounding_context),
            },
        )
        return parse_grounding_verdict(text)
