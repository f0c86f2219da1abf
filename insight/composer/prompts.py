"""
Prompt templates for the insight engine.

Prompts are loaded from Markdown files with YAML frontmatter (``type`` and
``version``) by ``PromptTemplateRegistry`` once at startup and are read-only
afterwards. Every prompt type has a built-in fallback that is used verbatim
when its file is missing, so the engine never depends on the prompt
directory being present.

Placeholders use ``str.format`` syntax; literal braces are doubled.
"""

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence

import structlog
import yaml
from langchain_core.prompts import PromptTemplate

from insight.schemas.analysis import AnalysisResult
from insight.schemas.events import WideEvent
from insight.schemas.results import (
    AggregationOutcome,
    ConversationalRecall,
    SemanticRetrieval,
    SynthesisContext,
)

logger = structlog.get_logger(__name__)


# ==============================================================================
# ANSWER RULES
# ==============================================================================

RULES = """1. Answer only based on the provided logs or aggregation results.
2. If the data does not contain the answer, say "Not enough evidence".
3. Be professional, concise, and technical.
4. If there are multiple possible causes, list them as hypotheses.
5. For aggregation results, present them in a clear, structured format (e.g., numbered list or table).
6. Provide a confidence score (0.0 to 1.0) for your answer based on how well the data supports it.
7. Use the same language as the question (Korean for Korean questions, English for English questions)."""

NOT_ENOUGH_EVIDENCE = "Not enough evidence"


# ==============================================================================
# FALLBACK TEMPLATES
# ==============================================================================

SEMANTIC_SYNTHESIS_FALLBACK = """You are an expert SRE and log analysis assistant.
Answer the user's question based on the provided {context_type} and conversation history.

[Rules]
{rules}

[Instructions]
- For statistical questions, present the results as a numbered list or table.
- For each aggregated item, give the main metric, its count and a brief explanation based on the example logs.
- Use [Chat History] to understand references (it, that, the error) and questions about the conversation itself.
- Cite the request ids of the logs you used.
{language_instruction}
[Question]
{question}

[Chat History]
{history_text}

{context_section}
{context_text}

[Output Format]
Answer: <your answer in the language of the question>
Confidence: <score between 0.0 and 1.0>
Sources: <comma-separated request ids you relied on, or NONE>
"""

QUERY_REFORMULATION_FALLBACK = """You are a query reformulation assistant for a log analysis system.
Rewrite ambiguous queries by resolving references (it, that, the error, 그, 그것, 그 에러) using the chat history.

[Chat History]
{history_text}

[Current Query]
{query}

[Instructions]
- Replace pronouns and ambiguous terms with the specific entities from the conversation.
- If the query is already clear and has no references, return it as-is.
- Keep the original language (Korean for Korean queries, English for English queries).
- Return ONLY the reformulated query, no explanations.

[Reformulated Query]
"""

HISTORY_SUMMARIZATION_FALLBACK = """You are summarizing a conversation between an engineer and a log analysis assistant.
Write a concise summary that keeps the services, routes, error codes, request ids and conclusions mentioned.
Use at most five sentences and the language of the conversation.

[Conversation]
{history_text}

[Summary]
"""

LOG_STYLE_TRANSFORMATION_FALLBACK = """You are a log analysis assistant.
Transform a natural language query into a hypothetical log-style narrative as it would appear in a log summary.

[Rules]
1. Write a descriptive, factual narrative as if it were a summary of one request.
2. Use technical language common in SRE and log analysis.
3. Include the specific entities mentioned in the query.
4. The narrative must be in English.
5. Return ONLY the narrative, no explanations.

[Query]
{query}

[Transformed Narrative]
"""

GROUNDING_VERIFICATION_FALLBACK = """You are a fact-checking assistant for log analysis answers.
Verify that the generated answer is strictly supported by the grounding context (log data).

[Rules]
1. Check each factual claim (error, service, timestamp, error code) against the grounding context.
2. Identify claims that cannot be verified from the provided logs.
3. Be strict: if a claim cannot be verified, mark it as unverified.

[Question]
{question}

[Generated Answer]
{answer}

[Grounding Context]
{grounding_context}

[Output Format]
Respond with JSON only:
{{
  "status": "VERIFIED" | "PARTIALLY_VERIFIED" | "NOT_VERIFIED",
  "confidence_adjustment": <number between 0.0 and 1.0>,
  "unverified_claims": ["claim 1", "claim 2"],
  "action": "KEEP_ANSWER" | "ADJUST_CONFIDENCE" | "REJECT_ANSWER",
  "reasoning": "<brief explanation>"
}}
"""

FALLBACK_TEMPLATES: Dict[str, str] = {
    "semantic-synthesis": SEMANTIC_SYNTHESIS_FALLBACK,
    "query-reformulation": QUERY_REFORMULATION_FALLBACK,
    "history-summarization": HISTORY_SUMMARIZATION_FALLBACK,
    "log-style-transformation": LOG_STYLE_TRANSFORMATION_FALLBACK,
    "grounding-verification": GROUNDING_VERIFICATION_FALLBACK,
}


# ==============================================================================
# TEMPLATE REGISTRY
# ==============================================================================


@dataclass(frozen=True)
class PromptTemplateConfig:
    type: str
    version: str
    template: str


def parse_prompt_file(content: str) -> Optional[PromptTemplateConfig]:
    """Split a Markdown prompt into YAML frontmatter and body."""
    if not content.startswith("---"):
        return None
    parts = content.split("---", 2)
    if len(parts) < 3:
        return None
    frontmatter = yaml.safe_load(parts[1]) or {}
    if not isinstance(frontmatter, dict) or not frontmatter.get("type"):
        return None
    return PromptTemplateConfig(
        type=str(frontmatter["type"]),
        version=str(frontmatter.get("version", "1")),
        template=parts[2].strip() + "\n",
    )


class PromptTemplateRegistry:
    """
    Prompt templates keyed by type, loaded once.

    Usage:
        registry = PromptTemplateRegistry(Path("insight/composer/templates"))
        registry.load()
        template = registry.get_template_string("semantic-synthesis")
    """

    def __init__(self, prompts_dir: Path):
        self.prompts_dir = Path(prompts_dir)
        self._templates: Dict[str, PromptTemplateConfig] = {}
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def templates(self) -> Mapping[str, PromptTemplateConfig]:
        return MappingProxyType(self._templates)

    def load(self) -> int:
        """Read every ``*.md`` prompt file. Calling it again is a no-op."""
        if self._loaded:
            return len(self._templates)

        if not self.prompts_dir.is_dir():
            logger.warning("Prompt directory not found, using fallbacks", prompts_dir=str(self.prompts_dir))
        else:
            for path in sorted(self.prompts_dir.glob("*.md")):
                try:
                    config = parse_prompt_file(path.read_text(encoding="utf-8"))
                except (OSError, yaml.YAMLError) as e:
                    logger.warning("Failed to load prompt file", path=str(path), error=str(e))
                    continue
                if config is None:
                    logger.warning("Prompt file has no frontmatter type", path=str(path))
                    continue
                self._templates[config.type] = config

        self._loaded = True
        logger.info("Prompt templates loaded", count=len(self._templates), prompts_dir=str(self.prompts_dir))
        return len(self._templates)

    def get_template_string(self, template_type: str) -> Optional[str]:
        config = self._templates.get(template_type)
        return config.template if config else None


_registry: Optional[PromptTemplateRegistry] = None


def get_prompt_registry() -> PromptTemplateRegistry:
    """Get or create the loaded registry for the configured prompt directory."""
    global _registry
    if _registry is None:
        from libs.common.settings import get_settings

        registry = PromptTemplateRegistry(get_settings().prompts_dir)
        registry.load()
        _registry = registry
    return _registry


def get_prompt_template(template_type: str, registry: Optional[PromptTemplateRegistry] = None) -> PromptTemplate:
    """
    Get a prompt template by type.

    The registry's file template is used when present, otherwise the
    built-in fallback.

    Raises:
        ValueError: If template_type is not a known prompt type
    """
    if template_type not in FALLBACK_TEMPLATES:
        available = list(FALLBACK_TEMPLATES.keys())
        raise ValueError(f"Unknown template: {template_type}. Available: {available}")

    text = registry.get_template_string(template_type) if registry is not None else None
    if text is None:
        text = FALLBACK_TEMPLATES[template_type]
    return PromptTemplate.from_template(text)


# ==============================================================================
# CONTEXT FORMATTING
# ==============================================================================

ANSWER_PREVIEW_CHARS = 150


def format_history(history: Sequence[AnalysisResult]) -> str:
    if not history:
        return "(no previous conversation)"
    lines = []
    for i, turn in enumerate(history, 1):
        answer = turn.answer[:ANSWER_PREVIEW_CHARS]
        if len(turn.answer) > ANSWER_PREVIEW_CHARS:
            answer += "..."
        lines.append(f"Q{i}: {turn.question}\nA{i}: {answer}")
    return "\n\n".join(lines)


def format_log_context(log: WideEvent, index: int) -> str:
    error = f"{log.error.code}: {log.error.message}" if log.error and log.error.code else "none"
    duration = f"{log.duration_ms}ms" if log.duration_ms is not None else "unknown"
    return (
        f"Log {index} (request_id: {log.request_id})\n"
        f"Timestamp: {log.timestamp.isoformat()}\n"
        f"Service: {log.service}, Route: {log.route}\n"
        f"User role: {log.user.role if log.user else 'ANONYMOUS'}\n"
        f"Error: {error}\n"
        f"Duration: {duration}"
    )


def format_aggregation(outcome: AggregationOutcome) -> str:
    lines = [f"Template: {outcome.template_name} ({outcome.template_id})", f"Sample size: {outcome.sample_size}"]
    if outcome.params:
        lines.append("Parameters: " + ", ".join(f"{k}={v}" for k, v in outcome.params.items()))
    if not outcome.rows:
        lines.append("No rows matched.")
    for i, row in enumerate(outcome.rows, 1):
        values = ", ".join(f"{k}={v}" for k, v in row.items() if k != "examples")
        lines.append(f"{i}. {values}")
        for example in row.get("examples", []) or []:
            lines.append(
                f"   - example request_id={example.get('request_id')} "
                f"service={example.get('service')} message={example.get('error_message')}"
            )
    return "\n".join(lines)


def build_synthesis_inputs(
    question: str,
    context: SynthesisContext,
    rules: str,
    history: Sequence[AnalysisResult] = (),
    target_language: Optional[str] = None,
) -> Dict[str, Any]:
    """Variables for the semantic-synthesis prompt."""
    if isinstance(context, SemanticRetrieval):
        context_type = "log contexts"
        context_section = "[Log Contexts]"
        context_text = "\n\n".join(format_log_context(log, i) for i, log in enumerate(context.grounded_logs, 1))
    elif isinstance(context, AggregationOutcome):
        context_type = "aggregation results"
        context_section = "[Aggregation Results]"
        context_text = format_aggregation(context)
    elif isinstance(context, ConversationalRecall):
        context_type = "conversation history"
        context_section = "[Log Contexts]"
        context_text = "(not needed: answer from the chat history)"
    else:
        raise ValueError(f"Unsupported synthesis context: {type(context).__name__}")

    language_instruction = f"- Write the answer in {target_language}.\n" if target_language else ""
    return {
        "context_type": context_type,
        "rules": rules,
        "language_instruction": language_instruction,
        "question": question,
        "history_text": format_history(history),
        "context_section": context_section,
        "context_text": context_text or "(empty)",
    }


def format_grounding_context(grounding_context: Sequence[Mapping[str, Any]]) -> str:
    return "\n".join(
        "- " + ", ".join(f"{k}={v}" for k, v in item.items() if v is not None) for item in grounding_context
    ) or "(empty)"
