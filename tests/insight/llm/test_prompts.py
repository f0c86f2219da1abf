"""
Tests for the prompt registry and context formatting.

Tests verify:
- Bundled Markdown templates load with their frontmatter type
- Missing directories and malformed files fall back to built-in prompts
- Unknown template types are rejected
- Synthesis inputs for each context kind
- History and aggregation formatting
"""

import pytest

from insight.composer.prompts import (
    FALLBACK_TEMPLATES,
    PromptTemplateRegistry,
    build_synthesis_inputs,
    format_aggregation,
    format_history,
    get_prompt_template,
    parse_prompt_file,
)
from insight.schemas.results import AggregationOutcome, ConversationalRecall, SemanticRetrieval
from libs.common.settings import DEFAULT_PROMPTS_DIR


def test_bundled_templates_load():
    registry = PromptTemplateRegistry(DEFAULT_PROMPTS_DIR)

    assert registry.load() == len(FALLBACK_TEMPLATES)
    assert registry.is_loaded
    assert set(registry.templates) == set(FALLBACK_TEMPLATES)


def test_load_is_idempotent(tmp_path):
    registry = PromptTemplateRegistry(tmp_path)
    registry.load()
    (tmp_path / "late.md").write_text("---\ntype: semantic-synthesis\n---\nLate {question}\n")

    registry.load()

    assert registry.get_template_string("semantic-synthesis") is None


def test_file_template_overrides_fallback(tmp_path):
    (tmp_path / "custom.md").write_text("---\ntype: log-style-transformation\nversion: 2\n---\nRewrite: {query}\n")
    registry = PromptTemplateRegistry(tmp_path)
    registry.load()

    prompt = get_prompt_template("log-style-transformation", registry)

    assert prompt.format(query="checkout errors") == "Rewrite: checkout errors\n"
    assert registry.templates["log-style-transformation"].version == "2"


def test_missing_directory_uses_fallback(tmp_path):
    registry = PromptTemplateRegistry(tmp_path / "missing")

    assert registry.load() == 0
    prompt = get_prompt_template("query-reformulation", registry)
    assert set(prompt.input_variables) == {"history_text", "query"}


def test_malformed_files_are_skipped(tmp_path):
    (tmp_path / "no_frontmatter.md").write_text("just text")
    (tmp_path / "no_type.md").write_text("---\nversion: 1\n---\nbody")

    registry = PromptTemplateRegistry(tmp_path)

    assert registry.load() == 0
    assert parse_prompt_file("just text") is None


def test_unknown_template_type():
    with pytest.raises(ValueError, match="Unknown template"):
        get_prompt_template("does-not-exist")


def test_synthesis_inputs_for_logs(make_event):
    context = SemanticRetrieval(query="checkout", grounded_logs=[make_event("r1", error_code="GATEWAY_TIMEOUT")])

    inputs = build_synthesis_inputs("why?", context, "RULES", target_language="Korean")

    assert inputs["context_type"] == "log contexts"
    assert "request_id: r1" in inputs["context_text"]
    assert "GATEWAY_TIMEOUT" in inputs["context_text"]
    assert inputs["language_instruction"] == "- Write the answer in Korean.\n"
    assert inputs["history_text"] == "(no previous conversation)"


def test_synthesis_inputs_for_aggregation():
    outcome = AggregationOutcome(
        template_id="TOP_ERROR_CODES",
        template_name="Top error codes",
        rows=[{"error_code": "GATEWAY_TIMEOUT", "count": 4, "examples": [{"request_id": "r1"}]}],
        sample_size=4,
    )

    inputs = build_synthesis_inputs("top errors", outcome, "RULES")

    assert inputs["context_section"] == "[Aggregation Results]"
    assert "1. error_code=GATEWAY_TIMEOUT, count=4" in inputs["context_text"]
    assert "example request_id=r1" in inputs["context_text"]


def test_synthesis_inputs_for_conversation():
    inputs = build_synthesis_inputs("what did we discuss?", ConversationalRecall(turns=2), "RULES")

    assert inputs["context_type"] == "conversation history"


def test_format_aggregation_without_rows():
    outcome = AggregationOutcome(template_id="ERROR_RATE", template_name="Error rate")

    assert "No rows matched." in format_aggregation(outcome)


def test_format_history_truncates_answers(make_turn):
    turn = make_turn(0).model_copy(update={"answer": "x" * 200})

    text = format_history([turn])

    assert text.startswith("Q1: question 0\nA1: ")
    assert text.endswith("x" * 150 + "...")