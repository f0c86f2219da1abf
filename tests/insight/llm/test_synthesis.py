"""
Tests for the LangChain synthesis adapter.

Tests verify:
- Answer/Confidence/Sources parsing, including defaults and NONE
- Grounding verdict parsing with snake_case and camelCase keys
- Malformed responses raise ProviderRejected
- Each port operation renders its prompt and parses the model output
"""

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from insight.llm.synthesis import LangChainSynthesis, parse_grounding_verdict, parse_synthesis_output
from insight.schemas.results import SemanticRetrieval
from libs.common.errors import ProviderRejected


def test_parse_full_output():
    result = parse_synthesis_output(
        "Answer: Checkout failed because of gateway timeouts.\nConfidence: 0.82\nSources: r1, r2"
    )

    assert result.answer == "Checkout failed because of gateway timeouts."
    assert result.confidence == 0.82
    assert result.sources == ["r1", "r2"]


def test_parse_multiline_answer_and_none_sources():
    result = parse_synthesis_output("Answer: line one\nline two\nConfidence: 0.4\nSources: NONE")

    assert result.answer == "line one\nline two"
    assert result.sources == []


def test_parse_without_markers_uses_defaults():
    result = parse_synthesis_output("Gateway timeouts.")

    assert result.answer == "Gateway timeouts."
    assert result.confidence == 0.5
    assert result.sources == []


def test_parse_clamps_confidence():
    assert parse_synthesis_output("Answer: x\nConfidence: 7").confidence == 1.0


@pytest.mark.parametrize("text", ["", "   ", "Answer:   \nConfidence: 0.9"])
def test_parse_empty_output_rejected(text):
    with pytest.raises(ProviderRejected):
        parse_synthesis_output(text)


def test_parse_grounding_verdict_camel_case():
    verdict = parse_grounding_verdict(
        'Here you go: {"status": "PARTIALLY_VERIFIED", "confidenceAdjustment": 0.6, '
        '"unverifiedClaims": ["claim"], "action": "ADJUST_CONFIDENCE", "reasoning": "one claim missing"}'
    )

    assert verdict.status == "PARTIALLY_VERIFIED"
    assert verdict.confidence_adjustment == 0.6
    assert verdict.unverified_claims == ["claim"]
    assert verdict.action == "ADJUST_CONFIDENCE"


@pytest.mark.parametrize("text", ["no json here", '{"action": "DELETE_EVERYTHING"}', "{not json}"])
def test_parse_grounding_verdict_rejects_malformed(text):
    with pytest.raises(ProviderRejected):
        parse_grounding_verdict(text)


@pytest.mark.asyncio
async def test_synthesize_with_fake_model(make_event):
    llm = FakeListChatModel(responses=["Answer: Timeouts.\nConfidence: 0.9\nSources: r1"])
    synthesis = LangChainSynthesis(llm=llm)
    context = SemanticRetrieval(query="checkout", grounded_logs=[make_event("r1", error_code="GATEWAY_TIMEOUT")])

    result = await synthesis.synthesize("why did checkout fail?", context, "RULES")

    assert result.answer == "Timeouts."
    assert result.sources == ["r1"]


@pytest.mark.asyncio
async def test_reformulate_strips_quotes(make_turn):
    synthesis = LangChainSynthesis(llm=FakeListChatModel(responses=['"why did checkout fail?"']))

    assert await synthesis.reformulate_query("why did it fail?", [make_turn(0)]) == "why did checkout fail?"


@pytest.mark.asyncio
async def test_verify_grounding():
    llm = FakeListChatModel(responses=['{"status": "VERIFIED", "action": "KEEP_ANSWER"}'])
    synthesis = LangChainSynthesis(llm=llm)

    verdict = await synthesis.verify_grounding("q", "a", [{"request_id": "r1", "service": "payments"}])

    assert verdict.status == "VERIFIED"
    assert verdict.confidence_adjustment == 1.0


def test_detect_language():
    synthesis = LangChainSynthesis(llm=FakeListChatModel(responses=["x"]))

    assert synthesis.detect_language("결제 실패 이유") == "Korean"
    assert synthesis.detect_language("payment failures") == "English"
