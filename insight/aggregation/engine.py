"""
Aggregation engine for statistical questions.

Picks the metric template that best matches the question, binds its
parameters from the extracted query metadata, and runs the resulting
pipeline against log storage. A template is only executed when every one of
its required parameters is bound; otherwise the engine reports
``NoMatchingAggregation`` instead of running a partially-parameterized
pipeline.
"""

import math
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from insight.aggregation.templates import METRIC_TEMPLATES, MetricTemplate, sample_size
from insight.ports import LogStoragePort
from insight.schemas.analysis import QueryMetadata
from insight.schemas.results import AggregationOutcome, AggregationResult, NoMatchingAggregation
from insight.tools.latency import DEFAULT_THRESHOLDS_MS
from insight.tools.provider_call import call_provider
from insight.tools.query_metadata import contains_keyword

logger = structlog.get_logger(__name__)

DEFAULT_TEMPLATE_IDS = ("TOP_ERROR_CODES", "ERROR_RATE")
BOUND_PARAM_BONUS = 2


def sample_confidence(sample: int) -> float:
    """Confidence ceiling for an answer computed from ``sample`` records."""
    if sample <= 0:
        return 0.3
    return min(0.95, 0.5 + 0.15 * math.log10(sample + 1))


class AggregationEngine:
    """
    Selects and executes metric templates.

    Usage:
        engine = AggregationEngine(log_store)
        result = await engine.run("top error codes yesterday", metadata)
    """

    def __init__(
        self,
        storage: LogStoragePort,
        templates: Optional[Dict[str, MetricTemplate]] = None,
        latency_thresholds: Sequence[float] = DEFAULT_THRESHOLDS_MS,
        timeout: float = 10.0,
    ):
        self.storage = storage
        self.templates = templates if templates is not None else METRIC_TEMPLATES
        self.latency_thresholds = tuple(latency_thresholds)
        self.timeout = timeout

    def bind_params(self, metadata: QueryMetadata) -> Dict[str, Any]:
        return {
            "start_time": metadata.start_time,
            "end_time": metadata.end_time,
            "service": metadata.service,
            "route": metadata.route,
            "error_code": metadata.error_code,
            "user_role": metadata.user_role.value if metadata.user_role else None,
            "metadata": metadata,
            "latency_thresholds": self.latency_thresholds,
        }

    def _score(self, template: MetricTemplate, text: str, params: Dict[str, Any]) -> int:
        signal_score = sum(1 for signal in template.signals if contains_keyword(text, signal))
        if not signal_score:
            return 0
        bound = sum(1 for name in template.required_params if params.get(name) is not None)
        return signal_score + BOUND_PARAM_BONUS * bound

    def candidate_templates(self, query: str, params: Dict[str, Any]) -> List[Tuple[MetricTemplate, int]]:
        """Templates with at least one matching signal, best score first."""
        text = query.lower()
        scored = [(template, self._score(template, text, params)) for template in self.templates.values()]
        scored = [(template, score) for template, score in scored if score > 0]
        # sorted() is stable, so ties keep registry order
        return sorted(scored, key=lambda item: item[1], reverse=True)

    def select(self, query: str, metadata: QueryMetadata) -> Tuple[Optional[MetricTemplate], Dict[str, Any], List[str], List[str]]:
        """
        Choose the best satisfiable template.

        Returns:
            (template or None, bound params, considered template ids, missing params)
        """
        params = self.bind_params(metadata)
        candidates = [template for template, _ in self.candidate_templates(query, params)]
        if not candidates:
            candidates = [self.templates[tid] for tid in DEFAULT_TEMPLATE_IDS if tid in self.templates]

        considered: List[str] = []
        missing: List[str] = []
        for template in candidates:
            considered.append(template.id)
            template_missing = template.missing_params(params)
            if not template_missing:
                return template, params, considered, missing
            missing.extend(name for name in template_missing if name not in missing)
        return None, params, considered, missing

    async def execute_template(self, template: MetricTemplate, params: Dict[str, Any]) -> AggregationOutcome:
        pipeline = template.build_pipeline(params)
        start_time = time.time()
        rows = await call_provider("storage", self.storage.execute_aggregation(pipeline), self.timeout)
        outcome = AggregationOutcome(
            template_id=template.id,
            template_name=template.name,
            params={k: _serializable(v) for k, v in params.items() if k not in ("metadata", "latency_thresholds") and v is not None},
            rows=rows,
            sample_size=sample_size(template.id, rows),
        )
        logger.info(
            "Aggregation executed",
            template_id=template.id,
            rows=len(rows),
            sample_size=outcome.sample_size,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return outcome

    async def run(self, query: str, metadata: QueryMetadata) -> AggregationResult:
        template, params, considered, missing = self.select(query, metadata)
        if template is None:
            logger.info("No satisfiable aggregation template", considered=considered, missing_params=missing)
            return NoMatchingAggregation(considered=considered, missing_params=missing)
        return await self.execute_template(template, params)


def _serializable(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value
