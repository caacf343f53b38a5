"""Prompts for fact extraction."""

from collections.abc import Iterable

from .models import Fact

EXTRACTION_SYSTEM_PROMPT = """You maintain the long-term memory of an AI assistant. Read a conversation exchange and decide which durable facts about the user to store, change or forget.

Return ONLY valid JSON:
{
  "operations": [
    {"op": "INSERT", "subject": "User", "predicate": "NAME", "object": "John", "confidence": 0.95, "importance": 5, "sentiment": "neutral"},
    {"op": "DELETE", "subject": "User", "predicate": "LOCATION", "object": "NYC", "reason": "User moved"},
    {"op": "INSERT", "subject": "User", "predicate": "LOCATION", "object": "San Francisco", "confidence": 0.9, "importance": 5}
  ],
  "reasoning": "<one sentence>"
}

Extract:
- Identity: "My name is John" -> (User, NAME, John)
- Places: "I live in San Francisco" -> (User, LOCATION, San Francisco)
- Work: "I'm an engineer at Google" -> (User, WORKS_AT, Google), (User, JOB_TITLE, Engineer)
- Preferences and diet: "I'm vegan" -> (User, DIET, Vegan)
- Health: "I'm allergic to peanuts" -> (User, HAS_ALLERGY, Peanuts)
- People: "My wife Sarah" -> (User, SPOUSE, Sarah)
- Several values at once: "I use React and TypeScript" -> (User, USES_TECH, React), (User, USES_TECH, TypeScript)

Ignore greetings, small talk, one-off requests and questions that state nothing about the user.

When a new fact contradicts one in the current memory, DELETE the old fact first and then INSERT the new one.

Confidence (0-1): 0.9+ explicit statement, 0.7-0.9 strong implication, 0.5-0.7 reasonable inference. Do not extract anything below 0.5.

Importance (1-10), how harmful forgetting it would be:
- 9-10 safety-critical: allergies, medical conditions, explicit boundaries ("never call me after 10pm")
- 7-8 strong preferences and constraints
- 4-6 job, location, relationships
- 1-3 trivia
Allergy and medical predicates MUST have importance 9 or higher.

Sentiment is "positive", "negative" or "neutral" when the emotional context is clear; omit it otherwise.

Rules:
1. Output JSON only.
2. With nothing to extract, return {"operations": [], "reasoning": "No durable facts found"}.
3. Predicates are UPPER_SNAKE_CASE.
4. The subject is "User" unless the fact is about someone else.
5. Keep objects short but complete.
6. Always give an importance for INSERT operations."""


def format_facts(facts: Iterable[Fact]) -> str:
    lines = [f"- ({f.subject}, {f.predicate}, {f.object})" for f in facts]
    return "\n".join(lines) if lines else "(No existing facts)"


def build_extraction_prompt(
    current_facts: Iterable[Fact],
    user_message: str,
    assistant_response: str,
) -> str:
    """Build the user prompt for one exchange.

    Args:
        current_facts: The principal's valid facts, shown so the model can
            spot contradictions.
        user_message: What the user said.
        assistant_response: What the assistant answered.

    Returns:
        Prompt text to send alongside EXTRACTION_SYSTEM_PROMPT.
    """
    return f"""## Current memory
{format_facts(current_facts)}

## New exchange
User: {user_message}
Assistant: {assistant_response}

Extract the durable facts from this exchange, handling conflicts with the current memory."""
