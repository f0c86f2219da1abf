"""
Pytest configuration and fixtures for insight tests.

Provides shared fixtures for:
- Fake Redis client (fakeredis)
- Test environment settings
- Common wide-event test data
"""

from datetime import datetime, timezone

import pytest

from insight.schemas.events import EventError, EventPerformance, EventUser, WideEvent


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    from libs.common.settings import get_settings

    monkeypatch.setenv("INSIGHT_APP_ENV", "test")
    monkeypatch.setenv("INSIGHT_SESSION_BACKEND", "memory")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)

    yield client

    await client.flushdb()
    await client.close()


@pytest.fixture
def make_event():
    """Factory for wide events with sensible defaults."""

    def _make(
        request_id: str = "req-1",
        timestamp: datetime = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        service: str = "payments",
        route: str = "POST /payments/checkout",
        role: str = "PREMIUM",
        error_code: str = None,
        error_message: str = "",
        duration_ms: float = 120.0,
    ) -> WideEvent:
        return WideEvent(
            request_id=request_id,
            timestamp=timestamp,
            service=service,
            route=route,
            user=EventUser(id=f"user-{request_id}", role=role),
            error=EventError(code=error_code, message=error_message) if error_code else None,
            performance=EventPerformance(duration_ms=duration_ms),
        )

    return _make


@pytest.fixture
def synthesis():
    """SynthesisPort double: AsyncMock methods with real language detection."""
    from unittest.mock import MagicMock

    from insight.ports import KOREAN_PATTERN, SynthesisPort

    mock = MagicMock(spec=SynthesisPort)
    mock.detect_language.side_effect = lambda text: "Korean" if KOREAN_PATTERN.search(text or "") else "English"
    return mock


@pytest.fixture
def make_turn():
    """Factory for answered turns."""
    from insight.schemas.analysis import AnalysisIntent, AnalysisResult

    def _make(
        index: int = 0,
        session_id: str = "s1",
        sources=None,
        intent: AnalysisIntent = AnalysisIntent.SEMANTIC,
    ) -> AnalysisResult:
        return AnalysisResult(
            session_id=session_id,
            question=f"question {index}",
            intent=intent,
            answer=f"answer {index}",
            sources=tuple(sources if sources is not None else [f"req-{index}"]),
            confidence=0.7,
        )

    return _make
