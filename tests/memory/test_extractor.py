"""Tests for LLM output parsing, operation validation and FactExtractor."""

import json
from unittest.mock import AsyncMock

import pytest

from cortex.config import PipelineConfig
from cortex.errors import ValidationError
from cortex.memory.extractor import (
    FactExtractor,
    effective_importance,
    normalize_predicate,
    parse_operation,
    parse_response,
    strip_code_fence,
    validate_extraction_result,
)
from cortex.memory.models import Fact, OpKind
from cortex.memory.prompts import EXTRACTION_SYSTEM_PROMPT, build_extraction_prompt


def raw_op(**overrides) -> dict:
    op = {"op": "INSERT", "subject": "User", "predicate": "NAME", "object": "Lucas"}
    op.update(overrides)
    return op


class TestHelpers:
    """Tests for small parsing helpers."""

    def test_strip_code_fence(self):
        content = '```json\n{"operations": []}\n```'
        assert strip_code_fence(content) == '{"operations": []}'

    def test_strip_code_fence_leaves_plain_json(self):
        assert strip_code_fence('  {"operations": []} ') == '{"operations": []}'

    @pytest.mark.parametrize(
        "raw,expected",
        [("name", "NAME"), ("lives in", "LIVES_IN"), ("  works   at ", "WORKS_AT")],
    )
    def test_normalize_predicate(self, raw: str, expected: str):
        assert normalize_predicate(raw) == expected

    def test_effective_importance_escalates_safety_predicates(self):
        assert effective_importance("HAS_ALLERGY", 3) == 9
        assert effective_importance("DO_NOT_CALL_AFTER", 5) == 9
        assert effective_importance("HAS_ALLERGY", 10) == 10
        assert effective_importance("LOCATION", 3) == 3


class TestParseOperation:
    """Tests for parse_operation()."""

    def test_valid_operation(self):
        op = parse_operation(raw_op(confidence=0.95, importance=6, sentiment="positive"))
        assert op.op is OpKind.INSERT
        assert (op.subject, op.predicate, op.object) == ("User", "NAME", "Lucas")
        assert op.confidence == 0.95
        assert op.importance == 6
        assert op.sentiment == "positive"

    def test_trims_and_normalizes(self):
        op = parse_operation(raw_op(subject=" User ", predicate="works at", object=" Google "))
        assert (op.subject, op.predicate, op.object) == ("User", "WORKS_AT", "Google")

    def test_defaults(self):
        op = parse_operation(raw_op())
        assert op.confidence == 0.8
        assert op.importance == 5
        assert op.sentiment is None

    def test_clamps_ranges(self):
        op = parse_operation(raw_op(confidence=1.7, importance=42))
        assert op.confidence == 1.0
        assert op.importance == 10

        op = parse_operation(raw_op(confidence=-0.3, importance=0))
        assert op.confidence == 0.0
        assert op.importance == 1

    def test_non_numeric_values_use_defaults(self):
        op = parse_operation(raw_op(confidence="high", importance=True))
        assert op.confidence == 0.8
        assert op.importance == 5

    def test_infinite_values_are_clamped(self):
        op = parse_operation(raw_op(confidence=float("inf"), importance=float("inf")))
        assert op.confidence == 1.0
        assert op.importance == 10

        op = parse_operation(raw_op(confidence=float("-inf"), importance=float("-inf")))
        assert op.confidence == 0.0
        assert op.importance == 1

    def test_huge_importance_is_clamped(self):
        assert parse_operation(raw_op(importance=10**400)).importance == 10

    def test_nan_values_use_defaults(self):
        op = parse_operation(raw_op(confidence=float("nan"), importance=float("nan")))
        assert op.confidence == 0.8
        assert op.importance == 5

    def test_invalid_sentiment_dropped(self):
        assert parse_operation(raw_op(sentiment="ecstatic")).sentiment is None

    def test_safety_predicate_escalated(self):
        op = parse_operation(raw_op(predicate="allergic to", object="Peanuts", importance=4))
        assert op.importance == 9

    @pytest.mark.parametrize(
        "item",
        [
            "not an object",
            raw_op(op="UPSERT"),
            raw_op(op=None),
            raw_op(subject=""),
            raw_op(predicate="   "),
            raw_op(object=12),
        ],
    )
    def test_malformed_raises(self, item):
        with pytest.raises(ValidationError):
            parse_operation(item)


class TestValidateExtractionResult:
    """Tests for validate_extraction_result()."""

    def test_drops_malformed_operations(self):
        result = validate_extraction_result(
            {
                "operations": [raw_op(), raw_op(op="NOPE"), "junk", raw_op(object="")],
                "reasoning": "found a name",
            }
        )
        assert len(result.operations) == 1
        assert result.reasoning == "found a name"

    def test_missing_operations(self):
        assert validate_extraction_result({"facts": []}).operations == []

    def test_not_an_object(self):
        assert validate_extraction_result([raw_op()]).operations == []


class TestParseResponse:
    """Tests for parse_response()."""

    def test_invalid_json_yields_empty_result(self):
        result = parse_response("I could not find anything")
        assert result.operations == []

    def test_fenced_json(self):
        content = "```json\n" + json.dumps({"operations": [raw_op()]}) + "\n```"
        assert len(parse_response(content).operations) == 1

    def test_uses_configured_defaults(self):
        config = PipelineConfig(default_confidence=0.6, default_importance=3)
        op = parse_response(json.dumps({"operations": [raw_op()]}), config).operations[0]
        assert op.confidence == 0.6
        assert op.importance == 3

    def test_non_finite_numbers_do_not_sink_the_batch(self):
        content = (
            '{"operations": ['
            '{"op": "INSERT", "subject": "User", "predicate": "MOOD", "object": "calm",'
            ' "importance": Infinity, "confidence": NaN},'
            '{"op": "INSERT", "subject": "User", "predicate": "CITY", "object": "Lima",'
            ' "importance": NaN, "confidence": -Infinity}'
            "]}"
        )

        operations = parse_response(content).operations

        assert [op.predicate for op in operations] == ["MOOD", "CITY"]
        assert (operations[0].importance, operations[0].confidence) == (10, 0.8)
        assert (operations[1].importance, operations[1].confidence) == (5, 0.0)


class TestPrompts:
    """Tests for prompt building."""

    def test_includes_facts_and_exchange(self):
        facts = [Fact(subject="User", predicate="LOCATION", object="NYC")]
        prompt = build_extraction_prompt(facts, "I moved to SF", "Nice!")
        assert "- (User, LOCATION, NYC)" in prompt
        assert "User: I moved to SF" in prompt
        assert "Assistant: Nice!" in prompt

    def test_no_facts_placeholder(self):
        assert "(No existing facts)" in build_extraction_prompt([], "hi", "hello")


class TestFactExtractor:
    """Tests for FactExtractor.extract()."""

    @pytest.mark.asyncio
    async def test_calls_llm_with_system_prompt(self):
        llm = AsyncMock()
        llm.complete.return_value = json.dumps(
            {"operations": [raw_op(predicate="LOCATION", object="Lima")], "reasoning": "move"}
        )
        extractor = FactExtractor(llm)

        result = await extractor.extract([], "I live in Lima", "Great city")

        assert [op.object for op in result.operations] == ["Lima"]
        assert result.reasoning == "move"
        prompt = llm.complete.call_args.args[0]
        assert "I live in Lima" in prompt
        assert llm.complete.call_args.kwargs["system"] == EXTRACTION_SYSTEM_PROMPT

    @pytest.mark.asyncio
    async def test_unparseable_response(self):
        llm = AsyncMock()
        llm.complete.return_value = "Sorry, I can't help with that."
        result = await FactExtractor(llm).extract([], "hi", "hello")
        assert result.operations == []

    @pytest.mark.asyncio
    async def test_llm_failure_propagates(self):
        llm = AsyncMock()
        llm.complete.side_effect = RuntimeError("API down")
        with pytest.raises(RuntimeError):
            await FactExtractor(llm).extract([], "hi", "hello")
