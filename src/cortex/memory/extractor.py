"""Fact extraction from conversation exchanges using an LLM."""

import json
import logging
import math
import re
from typing import Any

from ..config import DEFAULT_SAFETY_FRAGMENTS, PipelineConfig
from ..errors import ValidationError
from ..llm import LLMClient
from .models import CRITICAL_IMPORTANCE, ExtractionResult, Fact, Operation, OpKind
from .prompts import EXTRACTION_SYSTEM_PROMPT, build_extraction_prompt

logger = logging.getLogger(__name__)

SENTIMENTS = ("positive", "negative", "neutral")

_WHITESPACE = re.compile(r"\s+")


def strip_code_fence(content: str) -> str:
    """Remove a markdown code block wrapped around the response, if any."""
    text = content.strip()
    if not text.startswith("```"):
        return text

    lines = [line for line in text.split("\n") if not line.startswith("```")]
    return "\n".join(lines).strip()


def normalize_predicate(predicate: str) -> str:
    """'lives in' -> 'LIVES_IN'."""
    return _WHITESPACE.sub("_", predicate.strip().upper())


def _is_number(value: Any) -> bool:
    """True for real numbers, NaN excluded. Infinities are clamped later."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not (isinstance(value, float) and math.isnan(value))


def _required_text(raw: dict[str, Any], name: str) -> str:
    value = raw.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(name, "must be a non-empty string")
    return value.strip()


def effective_importance(
    predicate: str,
    importance: int,
    safety_fragments: list[str] | tuple[str, ...] = DEFAULT_SAFETY_FRAGMENTS,
) -> int:
    """Escalate safety-related predicates to critical importance."""
    upper = predicate.upper()
    if importance < CRITICAL_IMPORTANCE and any(f in upper for f in safety_fragments):
        return CRITICAL_IMPORTANCE
    return importance


def parse_operation(
    raw: Any,
    default_confidence: float = 0.8,
    default_importance: int = 5,
    safety_fragments: list[str] | tuple[str, ...] = DEFAULT_SAFETY_FRAGMENTS,
) -> Operation:
    """Build a normalized Operation from one raw LLM item.

    Raises:
        ValidationError: If the item is not an object or a required field
            is missing or malformed.
    """
    if not isinstance(raw, dict):
        raise ValidationError("operation", "must be an object")

    op_name = raw.get("op")
    try:
        op = OpKind(op_name)
    except ValueError:
        raise ValidationError("op", f"unknown operation {op_name!r}") from None

    subject = _required_text(raw, "subject")
    predicate = normalize_predicate(_required_text(raw, "predicate"))
    obj = _required_text(raw, "object")

    confidence = raw.get("confidence")
    if _is_number(confidence):
        confidence = float(max(0.0, min(1.0, confidence)))
    else:
        confidence = default_confidence

    importance = raw.get("importance")
    if _is_number(importance):
        importance = int(round(max(1, min(10, importance))))
    else:
        importance = default_importance
    importance = effective_importance(predicate, importance, safety_fragments)

    sentiment = raw.get("sentiment")
    if sentiment not in SENTIMENTS:
        sentiment = None

    reason = raw.get("reason")

    return Operation(
        op=op,
        subject=subject,
        predicate=predicate,
        object=obj,
        confidence=confidence,
        importance=importance,
        reason=reason if isinstance(reason, str) else None,
        sentiment=sentiment,
    )


def validate_extraction_result(
    raw: Any,
    default_confidence: float = 0.8,
    default_importance: int = 5,
    safety_fragments: list[str] | tuple[str, ...] = DEFAULT_SAFETY_FRAGMENTS,
) -> ExtractionResult:
    """Turn decoded LLM output into an ExtractionResult.

    Malformed operations are dropped. A payload without an ``operations``
    list yields an empty result.
    """
    if not isinstance(raw, dict):
        return ExtractionResult(reasoning="Invalid extraction result")

    items = raw.get("operations")
    if not isinstance(items, list):
        return ExtractionResult(reasoning="No operations found")

    operations = []
    for item in items:
        try:
            operations.append(
                parse_operation(item, default_confidence, default_importance, safety_fragments)
            )
        except ValidationError as e:
            logger.debug("Dropping operation %r: %s", item, e)

    reasoning = raw.get("reasoning")
    return ExtractionResult(
        operations=operations,
        reasoning=reasoning if isinstance(reasoning, str) else None,
    )


def parse_response(content: str, config: PipelineConfig | None = None) -> ExtractionResult:
    """Parse a raw LLM response. Unparseable content yields an empty result."""
    config = config or PipelineConfig()
    try:
        data = json.loads(strip_code_fence(content))
    except json.JSONDecodeError as e:
        logger.warning("Failed to parse extraction response: %s", e)
        return ExtractionResult()

    return validate_extraction_result(
        data,
        config.default_confidence,
        config.default_importance,
        config.safety_predicate_fragments,
    )


class FactExtractor:
    """Asks the LLM which operations an exchange implies."""

    def __init__(
        self,
        llm_client: LLMClient,
        config: PipelineConfig | None = None,
    ) -> None:
        """Initialize the extractor.

        Args:
            llm_client: Client used for the extraction call.
            config: Defaults and safety fragments used during validation.
        """
        self.llm = llm_client
        self.config = config or PipelineConfig()

    async def extract(
        self,
        current_facts: list[Fact],
        user_message: str,
        assistant_response: str,
    ) -> ExtractionResult:
        """Propose operations for one exchange.

        Args:
            current_facts: The principal's valid facts.
            user_message: What the user said.
            assistant_response: What the assistant answered.

        Returns:
            Validated operations; empty when the response cannot be parsed.
            Failures of the LLM call itself propagate.
        """
        prompt = build_extraction_prompt(current_facts, user_message, assistant_response)
        content = await self.llm.complete(prompt, system=EXTRACTION_SYSTEM_PROMPT)
        result = parse_response(content, self.config)
        logger.debug("Extracted %d operations", len(result.operations))
        return result
