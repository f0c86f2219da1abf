"""Keyword-based query metadata extraction and intent classification.

Turns a free-text question into ``QueryMetadata`` filters (time range,
service, route, error code, error flag, user role, latency bucket) and an
intent label. Everything here is a pure function of the question text, the
current time and the static vocabularies below.

Usage:
    extractor = QueryMetadataExtractor()
    metadata, intent = extractor.analyze("how many payment failures yesterday?")
    structured = preprocess_query("checkout errors", metadata)
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from insight.schemas.analysis import AnalysisIntent, LatencyBucket, QueryMetadata, UserRole, utcnow
from insight.tools.latency import classify_latency

logger = structlog.get_logger(__name__)


# ==============================================================================
# VOCABULARIES
# ==============================================================================

STATISTIC_KEYWORDS = [
    "how many", "count", "number of", "total", "average", "avg", "median",
    "percentile", "p50", "p90", "p95", "p99", "error rate", "failure rate", "rate",
    "ratio", "percentage", "percent", "distribution", "breakdown", "statistics",
    "stats", "trend", "몇", "개수", "건수", "평균", "비율", "통계",
]

AGGREGATION_KEYWORDS = [
    "top", "most common", "most frequent", "frequent", "ranking", "rank",
    "group by", "per service", "per route", "by service", "by route", "by role",
    "which service", "which route", "which endpoint", "how often", "compare",
    "가장 많", "순위",
]

CONVERSATIONAL_KEYWORDS = [
    "what did we discuss", "what did we talk about", "what have we discussed",
    "summarize our conversation", "summarize the conversation", "our conversation",
    "this conversation", "my previous question", "my first question", "my last question",
    "what did i ask", "what was my question", "이전 대화", "대화 요약", "무슨 얘기",
]

LOG_DOMAIN_KEYWORDS = [
    "error", "fail", "latency", "slow", "request", "response", "log", "timeout",
    "service", "route", "endpoint", "user", "exception", "status", "crash", "why",
    "happen", "issue", "problem", "incident", "outage", "payment", "checkout",
    "에러", "오류", "실패", "느린", "지연", "왜",
]

ERROR_KEYWORDS = [
    "error", "errors", "fail", "failed", "failure", "failures", "failing", "exception",
    "exceptions", "crash", "crashed", "broken", "declined", "rejected", "5xx", "went wrong",
    "에러", "오류", "실패",
]

# singular -> stored service name
SERVICE_MAP: Dict[str, str] = {
    "payment": "payments",
    "embedding": "embeddings",
    "user": "users",
    "order": "orders",
    "product": "products",
    "cart": "carts",
    "checkout": "checkouts",
}

# keyword -> canonical route, most specific first
ROUTE_PATTERNS: List[Tuple[Tuple[str, ...], str]] = [
    (("checkout", "check-out", "check out"), "/payments/checkout"),
    (("payment", "pay", "billing"), "/payments"),
    (("embedding", "embed", "vector"), "/embeddings"),
    (("search", "query", "ask"), "/search"),
    (("user", "profile", "account"), "/users"),
    (("order", "purchase"), "/orders"),
    (("product", "item", "catalog"), "/products"),
    (("cart", "basket"), "/carts"),
]

LATENCY_KEYWORDS: Dict[LatencyBucket, List[str]] = {
    LatencyBucket.UNDER_50MS: ["instant", "fast", "quick", "under 50", "<50ms"],
    LatencyBucket.FROM_50_TO_200MS: ["50-200", "50 to 200", "under 200"],
    LatencyBucket.FROM_200_TO_500MS: ["200-500", "200 to 500", "100-500", "100 to 500"],
    LatencyBucket.FROM_500_TO_1000MS: ["500-1000", "500 to 1000", "half second"],
    LatencyBucket.OVER_1000MS: ["slow", "sluggish", ">1000ms", "over 1000", "over a second", "timeout", "timed out"],
}

USER_ROLES_KEYWORDS: Dict[UserRole, List[str]] = {
    UserRole.PREMIUM: ["premium", "paid", "subscription", "subscriber"],
    UserRole.ADMIN: ["admin", "administrator"],
    UserRole.ANONYMOUS: ["anonymous", "guest", "unauthenticated"],
}

OUTCOME_KEYWORDS: Dict[str, List[str]] = {
    "FAILED": ["fail", "failed", "failure", "error", "exception", "declined", "rejected", "crash"],
    "WARNING": ["slow", "warning", "degraded", "retry", "retries"],
    "EDGE_CASE": ["edge case", "unusual", "anomaly", "anomalous", "weird"],
    "SUCCESS": ["success", "succeeded", "successful", "completed"],
}

ERROR_CODE_PATTERN = re.compile(r"\b([A-Z][A-Z0-9]*(?:_[A-Z0-9]+)+)\b")
ROUTE_PATH_PATTERN = re.compile(r"(?<![\w/])(\/[a-z0-9\-_]+(?:\/[a-z0-9\-_]+)*)")
ISO_DATE_PATTERN = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
RELATIVE_RANGE_PATTERN = re.compile(
    r"\b(?:last|past|previous)\s+(\d+)\s*(minute|min|hour|hr|day|week)s?\b"
)
LATENCY_VALUE_PATTERN = re.compile(
    r"(over|above|more than|slower than|>|under|below|less than|faster than|<)\s*"
    r"(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|secs?|seconds?)\b"
)
QUESTION_WORDS = ("what", "why", "how", "when", "where", "which", "who", "is", "are", "did", "does", "do", "can", "show", "list", "find", "explain")

_RANGE_UNITS = {"minute": "minutes", "min": "minutes", "hour": "hours", "hr": "hours", "day": "days", "week": "weeks"}


def contains_keyword(text: str, keyword: str) -> bool:
    """Whole-word match for ASCII keywords, substring match otherwise."""
    if keyword.isascii() and re.match(r"^[\w\- ]+$", keyword):
        return re.search(rf"(?<![\w]){re.escape(keyword)}(?![\w])", text) is not None
    return keyword in text


def _any_keyword(text: str, keywords: Iterable[str]) -> bool:
    return any(contains_keyword(text, kw) for kw in keywords)


def _mentions_stem(text: str, stem: str) -> bool:
    """Prefix match so 'fail' also finds 'failed' and 'failures'."""
    if stem.isascii():
        return re.search(rf"(?<![\w]){re.escape(stem)}", text) is not None
    return stem in text


class QueryMetadataExtractor:
    """
    Extracts filters and intent from a question.

    Features:
    - Time ranges: today, yesterday, this/last week, last N minutes/hours/days, ISO dates
    - Service, route path, error code and error flag
    - User role and latency bucket from keyword tables
    - Configurable statistical / conversational vocabularies
    """

    def __init__(
        self,
        latency_thresholds: Optional[Sequence[float]] = None,
        extra_statistical_keywords: Optional[Iterable[str]] = None,
        extra_conversational_keywords: Optional[Iterable[str]] = None,
    ):
        self.latency_thresholds = latency_thresholds
        self.statistical_keywords = STATISTIC_KEYWORDS + AGGREGATION_KEYWORDS + list(extra_statistical_keywords or [])
        self.conversational_keywords = CONVERSATIONAL_KEYWORDS + list(extra_conversational_keywords or [])

    def analyze(self, query: str, now: Optional[datetime] = None) -> Tuple[QueryMetadata, AnalysisIntent]:
        metadata = self.extract(query, now=now)
        return metadata, self.classify_intent(query, metadata)

    def extract(self, query: str, now: Optional[datetime] = None) -> QueryMetadata:
        """Extract metadata filters; fields that are not mentioned stay empty."""
        text = query.lower()
        start_time, end_time = self._extract_time_range(text, now or utcnow())
        error_code = self._extract_error_code(query)

        metadata = QueryMetadata(
            start_time=start_time,
            end_time=end_time,
            service=self._extract_service(text),
            route=self._extract_route(text),
            error_code=error_code,
            has_error=error_code is not None or _any_keyword(text, ERROR_KEYWORDS),
            user_role=self._extract_role(text),
            latency_bucket=self._extract_latency_bucket(text),
        )
        logger.debug("Query metadata extracted", query_preview=query[:100], metadata=metadata.model_dump(mode="json"))
        return metadata

    def classify_intent(self, query: str, metadata: Optional[QueryMetadata] = None) -> AnalysisIntent:
        """
        Classify a question.

        Conversation-about-the-conversation first, then statistical signals
        (aggregation keywords, counting or comparison phrasing), then
        natural-language questions about log behavior.
        """
        text = query.lower().strip()
        if not text:
            return AnalysisIntent.UNKNOWN

        if _any_keyword(text, self.conversational_keywords):
            return AnalysisIntent.CONVERSATIONAL

        if _any_keyword(text, self.statistical_keywords):
            return AnalysisIntent.STATISTICAL

        words = re.findall(r"[a-z0-9]+|[가-힣]+", text)
        if len(words) < 2:
            return AnalysisIntent.UNKNOWN

        mentions_logs = any(_mentions_stem(text, keyword) for keyword in LOG_DOMAIN_KEYWORDS)
        has_filters = metadata is not None and any(
            [metadata.service, metadata.route, metadata.error_code, metadata.has_error, metadata.user_role]
        )
        looks_like_question = text.endswith("?") or words[0] in QUESTION_WORDS
        if mentions_logs or has_filters or (looks_like_question and len(words) >= 3):
            return AnalysisIntent.SEMANTIC
        return AnalysisIntent.UNKNOWN

    # ------------------------------------------------------------------
    # Field extractors
    # ------------------------------------------------------------------

    def _extract_time_range(self, text: str, now: datetime) -> Tuple[Optional[datetime], Optional[datetime]]:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)

        dates = ISO_DATE_PATTERN.findall(text)
        if dates:
            try:
                parsed = sorted(datetime.fromisoformat(d).replace(tzinfo=timezone.utc) for d in dates)
            except ValueError:
                parsed = []
            if parsed:
                return parsed[0], parsed[-1] + timedelta(days=1) - timedelta(microseconds=1)

        match = RELATIVE_RANGE_PATTERN.search(text)
        if match:
            amount, unit = int(match.group(1)), _RANGE_UNITS[match.group(2)]
            return now - timedelta(**{unit: amount}), now

        if "yesterday" in text or "어제" in text:
            return start_of_today - timedelta(days=1), start_of_today - timedelta(microseconds=1)
        if "today" in text or "오늘" in text:
            return start_of_today, now
        if re.search(r"\b(?:last|past)\s+hour\b", text):
            return now - timedelta(hours=1), now
        if "this week" in text:
            return start_of_today - timedelta(days=now.weekday()), now
        if re.search(r"\b(?:last|past)\s+week\b", text):
            return now - timedelta(weeks=1), now
        return None, None

    def _extract_service(self, text: str) -> Optional[str]:
        best: Optional[Tuple[int, str]] = None
        for singular, service in SERVICE_MAP.items():
            for match in re.finditer(rf"\b{singular}s?\b", text):
                preceding = text[: match.start()].split()[-1:] or [""]
                if singular == "user" and _any_keyword(preceding[0], _all_role_keywords()):
                    continue
                if best is None or match.start() < best[0]:
                    best = (match.start(), service)
                break
        return best[1] if best else None

    def _extract_route(self, text: str) -> Optional[str]:
        match = ROUTE_PATH_PATTERN.search(text)
        return match.group(1) if match else None

    def _extract_error_code(self, query: str) -> Optional[str]:
        match = ERROR_CODE_PATTERN.search(query)
        return match.group(1) if match else None

    def _extract_role(self, text: str) -> Optional[UserRole]:
        for role, keywords in USER_ROLES_KEYWORDS.items():
            if _any_keyword(text, keywords):
                return role
        return None

    def _extract_latency_bucket(self, text: str) -> Optional[LatencyBucket]:
        match = LATENCY_VALUE_PATTERN.search(text)
        if match:
            direction, value, unit = match.groups()
            duration = float(value) * (1 if unit.startswith("m") else 1000)
            if direction in ("under", "below", "less than", "faster than", "<"):
                duration = max(duration - 1e-6, 0.0)
            return classify_latency(duration, self.latency_thresholds)
        for bucket, keywords in LATENCY_KEYWORDS.items():
            if _any_keyword(text, keywords):
                return bucket
        return None


def _all_role_keywords() -> List[str]:
    return [kw for keywords in USER_ROLES_KEYWORDS.values() for kw in keywords]


def infer_route(text: str) -> Optional[str]:
    """Route implied by keywords when no explicit path is given."""
    lowered = text.lower()
    for keywords, route in ROUTE_PATTERNS:
        if _any_keyword(lowered, keywords):
            return route
    return None


def infer_outcome(text: str, metadata: QueryMetadata) -> Optional[str]:
    if metadata.has_error:
        return "FAILED"
    lowered = text.lower()
    for outcome, keywords in OUTCOME_KEYWORDS.items():
        if _any_keyword(lowered, keywords):
            return outcome
    return None


def preprocess_query(query: str, metadata: QueryMetadata) -> str:
    """
    Append the canonical layer used by dual-layer summaries to a query.

    Only fields that are known are included, e.g.
    ``"...\\n\\nOutcome: FAILED, Service: payments, Error: ANY, ErrorMessage: ANY"``.
    """
    parts: List[str] = []

    outcome = infer_outcome(query, metadata)
    if outcome:
        parts.append(f"Outcome: {outcome}")
    if metadata.service:
        parts.append(f"Service: {metadata.service}")
    route = metadata.route or infer_route(query)
    if route:
        parts.append(f"Route: {route}")
    if metadata.error_code or metadata.has_error:
        parts.append(f"Error: {metadata.error_code or 'ANY'}")
        parts.append("ErrorMessage: ANY")
    if metadata.user_role:
        parts.append(f"UserRole: {metadata.user_role.value}")
    if metadata.latency_bucket and metadata.latency_bucket != LatencyBucket.UNKNOWN:
        parts.append(f"LatencyBucket: {metadata.latency_bucket.value}")

    if not parts:
        return query
    return f"{query}\n\n{', '.join(parts)}"


_extractor: Optional[QueryMetadataExtractor] = None


def get_metadata_extractor() -> QueryMetadataExtractor:
    """Get or create the extractor configured from settings."""
    global _extractor
    if _extractor is None:
        from libs.common.settings import get_settings

        settings = get_settings()
        _extractor = QueryMetadataExtractor(
            latency_thresholds=settings.latency_thresholds_ms,
            extra_statistical_keywords=settings.statistical_keywords,
            extra_conversational_keywords=settings.conversational_keywords,
        )
    return _extractor
