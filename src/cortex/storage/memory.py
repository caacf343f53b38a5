"""In-memory fact store.

Used as the hot tier and in tests. Data is lost when the process exits.
"""

from dataclasses import dataclass, field, replace
from typing import Any

from ..memory.models import (
    ConversationExchange,
    Fact,
    FactFilter,
    Session,
    new_id,
    utcnow,
)
from .base import FactStore


@dataclass
class _PrincipalData:
    facts: dict[str, Fact] = field(default_factory=dict)
    conversations: list[ConversationExchange] = field(default_factory=list)
    sessions: dict[str, Session] = field(default_factory=dict)


class InMemoryFactStore(FactStore):
    """Fact store backed by plain dictionaries."""

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, _PrincipalData] = {}

    async def initialize(self) -> None:
        self._initialized = True

    async def close(self) -> None:
        self._data.clear()
        self._initialized = False

    def _principal(self, principal: str) -> _PrincipalData:
        if principal not in self._data:
            self._data[principal] = _PrincipalData()
        return self._data[principal]

    async def get_facts(
        self, principal: str, fact_filter: FactFilter | None = None
    ) -> list[Fact]:
        await self.ensure_initialized()
        fact_filter = fact_filter or FactFilter()
        return fact_filter.apply(list(self._principal(principal).facts.values()))

    async def get_fact_by_id(self, principal: str, fact_id: str) -> Fact | None:
        await self.ensure_initialized()
        return self._principal(principal).facts.get(fact_id)

    async def upsert_fact(
        self, principal: str, fact: Fact, *, match_object: bool = False
    ) -> Fact:
        await self.ensure_initialized()
        facts = self._principal(principal).facts
        now = utcnow()

        existing = next(
            (
                f
                for f in facts.values()
                if f.is_valid
                and f.subject == fact.subject
                and f.predicate == fact.predicate
                and (not match_object or f.object == fact.object)
            ),
            None,
        )

        if existing is not None:
            updated = replace(
                fact,
                id=existing.id,
                created_at=existing.created_at,
                updated_at=now,
            )
            facts[existing.id] = updated
            return updated

        created = replace(fact, id=new_id(), created_at=now, updated_at=now)
        facts[created.id] = created
        return created

    async def put_fact(self, principal: str, fact: Fact) -> Fact:
        await self.ensure_initialized()
        self._principal(principal).facts[fact.id] = fact
        return fact

    async def update_fact(
        self, principal: str, fact_id: str, changes: dict[str, Any]
    ) -> Fact | None:
        await self.ensure_initialized()
        facts = self._principal(principal).facts
        fact = facts.get(fact_id)
        if fact is None:
            return None

        changes = {k: v for k, v in changes.items() if k not in ("id", "updated_at")}
        updated = replace(fact, **changes, updated_at=utcnow())
        facts[fact_id] = updated
        return updated

    async def delete_fact(
        self, principal: str, fact_id: str, reason: str | None = None
    ) -> bool:
        await self.ensure_initialized()
        facts = self._principal(principal).facts
        fact = facts.get(fact_id)
        if fact is None:
            return False

        if fact.is_valid:
            metadata = dict(fact.metadata)
            if reason:
                metadata["invalidation_reason"] = reason
            facts[fact_id] = replace(fact, invalidated_at=utcnow(), metadata=metadata)
        return True

    async def hard_delete_fact(self, principal: str, fact_id: str) -> bool:
        await self.ensure_initialized()
        return self._principal(principal).facts.pop(fact_id, None) is not None

    async def get_conversation_history(
        self,
        principal: str,
        limit: int | None = None,
        session_id: str | None = None,
    ) -> list[ConversationExchange]:
        await self.ensure_initialized()
        conversations = list(self._principal(principal).conversations)
        if session_id:
            conversations = [c for c in conversations if c.session_id == session_id]
        conversations.sort(key=lambda c: c.timestamp, reverse=True)
        if limit:
            conversations = conversations[:limit]
        return conversations

    async def save_conversation(
        self, principal: str, exchange: ConversationExchange
    ) -> ConversationExchange:
        await self.ensure_initialized()
        data = self._principal(principal)
        data.conversations.append(exchange)

        session = data.sessions.get(exchange.session_id)
        if session is not None:
            session.message_count += 1
        return exchange

    async def delete_conversation(self, principal: str, exchange_id: str) -> bool:
        await self.ensure_initialized()
        data = self._principal(principal)
        remaining = [c for c in data.conversations if c.id != exchange_id]
        removed = len(remaining) != len(data.conversations)
        data.conversations = remaining
        return removed

    async def get_sessions(
        self, principal: str, limit: int | None = None
    ) -> list[Session]:
        await self.ensure_initialized()
        sessions = sorted(
            self._principal(principal).sessions.values(),
            key=lambda s: s.started_at,
            reverse=True,
        )
        if limit:
            sessions = sessions[:limit]
        return sessions

    async def get_session(self, principal: str, session_id: str) -> Session | None:
        await self.ensure_initialized()
        return self._principal(principal).sessions.get(session_id)

    async def create_session(self, principal: str) -> Session:
        await self.ensure_initialized()
        session = Session(principal=principal)
        self._principal(principal).sessions[session.id] = session
        return session

    async def end_session(
        self, principal: str, session_id: str, summary: str | None = None
    ) -> Session | None:
        await self.ensure_initialized()
        session = self._principal(principal).sessions.get(session_id)
        if session is None:
            return None

        session.ended_at = utcnow()
        if summary:
            session.summary = summary
        return session

    async def import_principal(
        self, principal: str, data: dict[str, list[dict[str, Any]]]
    ) -> None:
        await self.ensure_initialized()
        target = self._principal(principal)
        for raw in data.get("facts", []):
            fact = Fact.from_dict(raw)
            target.facts[fact.id] = fact
        for raw in data.get("conversations", []):
            target.conversations.append(ConversationExchange.from_dict(raw))
        for raw in data.get("sessions", []):
            session = Session.from_dict(raw)
            target.sessions[session.id] = session

    async def clear_principal(self, principal: str) -> None:
        await self.ensure_initialized()
        self._data.pop(principal, None)
