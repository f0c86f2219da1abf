"""
Tests for follow-up question reformulation.

Tests verify:
- Questions without references or without history are untouched
- References are resolved through the synthesis port
- Failures, empty rewrites and language changes fall back to the original
- Standalone detection
"""

import pytest

from libs.common.errors import ProviderTimeout
from libs.memory.reformulation import QueryReformulator, has_references, is_standalone


@pytest.mark.asyncio
async def test_no_history_returns_original(synthesis):
    reformulator = QueryReformulator(synthesis)

    assert await reformulator.reformulate("why did it fail?", []) == "why did it fail?"
    synthesis.reformulate_query.assert_not_awaited()


@pytest.mark.asyncio
async def test_no_references_returns_original(synthesis, make_turn):
    reformulator = QueryReformulator(synthesis)

    result = await reformulator.reformulate("show payment failures", [make_turn(0)])

    assert result == "show payment failures"
    synthesis.reformulate_query.assert_not_awaited()


@pytest.mark.asyncio
async def test_reference_is_resolved(synthesis, make_turn):
    synthesis.reformulate_query.return_value = "why did the checkout request with GATEWAY_TIMEOUT fail?"
    reformulator = QueryReformulator(synthesis, history_turns=2)
    history = [make_turn(i) for i in range(4)]

    result = await reformulator.reformulate("why did it fail?", history)

    assert result == "why did the checkout request with GATEWAY_TIMEOUT fail?"
    synthesis.reformulate_query.assert_awaited_once_with("why did it fail?", history[-2:])


@pytest.mark.asyncio
async def test_failure_returns_original(synthesis, make_turn):
    synthesis.reformulate_query.side_effect = ProviderTimeout("synthesis", 1.0)
    reformulator = QueryReformulator(synthesis)

    assert await reformulator.reformulate("why did it fail?", [make_turn(0)]) == "why did it fail?"


@pytest.mark.asyncio
async def test_language_change_returns_original(synthesis, make_turn):
    synthesis.reformulate_query.return_value = "결제가 왜 실패했나요?"
    reformulator = QueryReformulator(synthesis)

    assert await reformulator.reformulate("why did it fail?", [make_turn(0)]) == "why did it fail?"


@pytest.mark.asyncio
async def test_empty_rewrite_returns_original(synthesis, make_turn):
    synthesis.reformulate_query.return_value = ""
    reformulator = QueryReformulator(synthesis)

    assert await reformulator.reformulate("what caused that?", [make_turn(0)]) == "what caused that?"


def test_has_references():
    assert has_references("what caused it?")
    assert has_references("그 에러는 왜 발생했어?")
    assert not has_references("show checkout failures")


def test_is_standalone():
    assert is_standalone("Why did checkout fail?", "why did checkout fail")
    assert is_standalone("why did checkout fail", "why did checkout fail for premium users")
    assert not is_standalone("what caused that?", "why did the checkout request with GATEWAY_TIMEOUT fail?")
