"""Error taxonomy for the insight engine.

Provider failures are split into timeouts and rejections so callers can
decide between retrying and reporting. Retrieval and aggregation failures
are surfaced to the caller of ``ask``; cache failures are absorbed by the
session layer, which degrades to single-turn mode.
"""

from __future__ import annotations

from typing import Iterable, Optional


class InsightError(Exception):
    """Base class for all engine errors."""

    error_code = "INSIGHT_ERROR"


class ProviderError(InsightError):
    """An external provider (embedding, rerank, synthesis, storage) failed."""

    error_code = "PROVIDER_ERROR"

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderTimeout(ProviderError):
    error_code = "PROVIDER_TIMEOUT"

    def __init__(self, provider: str, timeout: float):
        super().__init__(provider, f"timed out after {timeout:.1f}s")
        self.timeout = timeout


class ProviderRejected(ProviderError):
    """The provider call failed or returned a response of the wrong shape."""

    error_code = "PROVIDER_REJECTED"


class RetrievalFailure(InsightError):
    """No candidates were found, or grounding failed for every candidate."""

    error_code = "RETRIEVAL_FAILURE"


class AggregationUnsatisfiable(InsightError):
    """No metric template had all of its required parameters bound."""

    error_code = "AGGREGATION_UNSATISFIABLE"

    def __init__(
        self,
        message: str,
        template_ids: Optional[Iterable[str]] = None,
        missing_params: Optional[Iterable[str]] = None,
    ):
        super().__init__(message)
        self.template_ids = list(template_ids or [])
        self.missing_params = sorted(set(missing_params or []))


class CacheUnavailable(InsightError):
    """The session store could not be reached."""

    error_code = "CACHE_UNAVAILABLE"
