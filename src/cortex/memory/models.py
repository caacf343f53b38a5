"""Data models for the memory system."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

CRITICAL_IMPORTANCE = 9


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MemoryStage(Enum):
    """Consolidation level of a fact."""

    SHORT_TERM = "short-term"
    WORKING = "working"
    LONG_TERM = "long-term"

    @property
    def rank(self) -> int:
        """Ordering used to tell promotions from demotions."""
        ranks = {
            MemoryStage.SHORT_TERM: 0,
            MemoryStage.WORKING: 1,
            MemoryStage.LONG_TERM: 2,
        }
        return ranks[self]


class OpKind(Enum):
    """Kind of a proposed mutation."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ResolutionKind(Enum):
    """How a conflict with an existing fact was settled."""

    REPLACE = "replace"
    KEEP_BOTH = "keep_both"
    MERGE = "merge"
    IGNORE = "ignore"


@dataclass(frozen=True)
class Fact:
    """A subject-predicate-object triple known about a principal.

    Attributes:
        subject: The entity the fact is about (e.g., 'User').
        predicate: Normalized uppercase relation (e.g., 'LOCATION').
        object: The value (e.g., 'San Francisco').
        id: Opaque unique id, assigned by the store on insert.
        confidence: Extraction confidence in [0, 1].
        importance: 1-10; 9 and above marks safety-critical facts.
        source: Session id the fact came from.
        created_at: When the fact was first stored.
        updated_at: When the fact was last changed.
        invalidated_at: When the fact was superseded, None while valid.
        memory_stage: Consolidation stage.
        access_count: Times the fact was retrieved (reinforcement signal).
        last_accessed_at: Last retrieval time.
        sentiment: Emotional context when learned, if detected.
        metadata: Free-form extra data.
    """

    subject: str
    predicate: str
    object: str
    id: str = field(default_factory=new_id)
    confidence: float = 0.8
    importance: int = 5
    source: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    invalidated_at: datetime | None = None
    memory_stage: MemoryStage = MemoryStage.SHORT_TERM
    access_count: int = 0
    last_accessed_at: datetime | None = None
    sentiment: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return self.invalidated_at is None

    @property
    def is_critical(self) -> bool:
        return self.importance >= CRITICAL_IMPORTANCE

    @property
    def reinforcement_count(self) -> int:
        return self.access_count

    @property
    def last_reinforced_at(self) -> datetime:
        return self.last_accessed_at or self.created_at

    def evolve(self, **changes: Any) -> Fact:
        """Return a copy with the given fields changed."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with ISO-8601 timestamps."""
        data = asdict(self)
        for key in ("created_at", "updated_at", "invalidated_at", "last_accessed_at"):
            data[key] = _iso(data[key])
        data["memory_stage"] = self.memory_stage.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Fact:
        """Create from a dictionary produced by to_dict."""
        values = dict(data)
        for key in ("created_at", "updated_at", "invalidated_at", "last_accessed_at"):
            if key in values:
                values[key] = _parse_dt(values[key])
        if "memory_stage" in values:
            values["memory_stage"] = MemoryStage(values["memory_stage"] or "short-term")
        values["metadata"] = dict(values.get("metadata") or {})
        return cls(**values)


@dataclass(frozen=True)
class Operation:
    """A mutation proposed by the extraction step. Never persisted."""

    op: OpKind
    subject: str
    predicate: str
    object: str
    confidence: float | None = None
    importance: int | None = None
    reason: str | None = None
    sentiment: str | None = None

    @classmethod
    def delete(cls, fact: Fact, reason: str) -> Operation:
        """Build a DELETE addressed at an existing fact."""
        return cls(
            op=OpKind.DELETE,
            subject=fact.subject,
            predicate=fact.predicate,
            object=fact.object,
            reason=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["op"] = self.op.value
        return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class ResolutionRecord:
    """One settled conflict, kept for auditing."""

    existing_fact: Fact
    operation: Operation
    resolution: ResolutionKind

    def to_dict(self) -> dict[str, Any]:
        return {
            "existing_fact_id": self.existing_fact.id,
            "existing_object": self.existing_fact.object,
            "operation": self.operation.to_dict(),
            "resolution": self.resolution.value,
        }


@dataclass
class FactFilter:
    """Query options for reading facts."""

    subject: str | None = None
    predicate: str | None = None
    predicates: list[str] | None = None
    min_importance: int | None = None
    valid_only: bool = True
    order_by: str | None = None
    order_dir: str = "asc"
    limit: int | None = None

    ORDER_FIELDS = ("created_at", "updated_at", "confidence")

    def __post_init__(self) -> None:
        if self.order_by is not None and self.order_by not in self.ORDER_FIELDS:
            raise ValueError(f"order_by must be one of {self.ORDER_FIELDS}")
        if self.order_dir not in ("asc", "desc"):
            raise ValueError("order_dir must be 'asc' or 'desc'")

    def matches(self, fact: Fact) -> bool:
        """Check the non-ordering criteria against one fact."""
        if self.subject is not None and fact.subject != self.subject:
            return False
        if self.predicate is not None and fact.predicate != self.predicate:
            return False
        if self.predicates and fact.predicate not in self.predicates:
            return False
        if self.min_importance is not None and fact.importance < self.min_importance:
            return False
        if self.valid_only and not fact.is_valid:
            return False
        return True

    def apply(self, facts: list[Fact]) -> list[Fact]:
        """Filter, order and limit an in-memory list of facts."""
        result = [f for f in facts if self.matches(f)]
        if self.order_by:
            result.sort(
                key=lambda f: getattr(f, self.order_by),
                reverse=self.order_dir == "desc",
            )
        if self.limit:
            result = result[: self.limit]
        return result


@dataclass
class Session:
    """A conversation session of one principal."""

    principal: str
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None
    message_count: int = 0
    summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = _iso(self.started_at)
        data["ended_at"] = _iso(self.ended_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        values = dict(data)
        values["started_at"] = _parse_dt(values.get("started_at")) or utcnow()
        values["ended_at"] = _parse_dt(values.get("ended_at"))
        return cls(**values)


@dataclass
class ConversationExchange:
    """A user message and the assistant's reply."""

    principal: str
    session_id: str
    user_message: str
    assistant_response: str
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationExchange:
        values = dict(data)
        values["timestamp"] = _parse_dt(values.get("timestamp")) or utcnow()
        values["metadata"] = dict(values.get("metadata") or {})
        return cls(**values)


@dataclass
class ExtractionResult:
    """Validated output of one extraction call."""

    operations: list[Operation] = field(default_factory=list)
    reasoning: str | None = None


@dataclass
class HydratedContext:
    """Compiled read result for one query."""

    compiled_prompt: str
    facts: list[Fact] = field(default_factory=list)
    estimated_tokens: int = 0
    recent_history: list[ConversationExchange] = field(default_factory=list)
    from_cache: bool = False
