"""Tiered storage over a hot (fast, bounded) and a cold (durable) store.

Read path: cold answers fact queries until hot is known to mirror every fact
of the principal; single facts are looked up in hot first. Reads promote what
they touch. Write path: cold first (authoritative), then best-effort hot.
Hot keeps at most hot_fact_limit facts and hot_conversation_limit exchanges
per principal.

Any failure of the hot store is logged and ignored; any failure of the cold
store propagates to the caller. Sessions live in cold only.
"""

import logging
from collections.abc import Awaitable
from datetime import datetime
from typing import Any, TypeVar

from ..config import TieredConfig
from ..memory.models import ConversationExchange, Fact, FactFilter, Session
from .base import FactStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TieredStore(FactStore):
    """Fact store composed of a hot and a cold store."""

    def __init__(
        self,
        hot: FactStore,
        cold: FactStore,
        config: TieredConfig | None = None,
    ) -> None:
        super().__init__()
        self.hot = hot
        self.cold = cold
        self.config = config or TieredConfig()
        # Principals whose whole fact set, invalidated facts included, is in hot
        self._complete: set[str] = set()

    async def _hot_call(
        self, action: str, call: Awaitable[T], principal: str | None = None
    ) -> T | None:
        """Await a hot store call, swallowing its failure.

        A failed call may leave hot out of step with cold, so the principal
        loses its complete mark.
        """
        try:
            return await call
        except Exception as e:
            logger.warning("Hot tier %s failed: %s", action, e)
            if principal is not None:
                self._complete.discard(principal)
            return None

    def hot_is_complete(self, principal: str) -> bool:
        """Whether hot currently mirrors every fact of the principal."""
        return principal in self._complete

    async def initialize(self) -> None:
        await self.cold.initialize()
        await self._hot_call("initialize", self.hot.initialize())
        self._initialized = True

    async def close(self) -> None:
        await self._hot_call("close", self.hot.close())
        await self.cold.close()
        self._initialized = False

    # Facts

    async def get_facts(
        self, principal: str, fact_filter: FactFilter | None = None
    ) -> list[Fact]:
        await self.ensure_initialized()

        if principal in self._complete:
            facts = await self._hot_call(
                "read", self.hot.get_facts(principal, fact_filter), principal
            )
            if facts is not None:
                return facts

        facts = await self.cold.get_facts(principal, fact_filter)
        if self.config.auto_promote and facts:
            await self._load_hot(principal, facts)
        return facts

    async def get_fact_by_id(self, principal: str, fact_id: str) -> Fact | None:
        await self.ensure_initialized()

        fact = await self._hot_call("read", self.hot.get_fact_by_id(principal, fact_id))
        if fact is not None:
            return fact

        fact = await self.cold.get_fact_by_id(principal, fact_id)
        if fact is not None and self.config.auto_promote:
            await self._promote(principal, [fact])
        return fact

    async def upsert_fact(
        self, principal: str, fact: Fact, *, match_object: bool = False
    ) -> Fact:
        await self.ensure_initialized()

        saved = await self.cold.upsert_fact(principal, fact, match_object=match_object)
        await self._hot_call("write", self.hot.put_fact(principal, saved), principal)

        if self.config.auto_demote:
            await self._demote(principal)
        return saved

    async def put_fact(self, principal: str, fact: Fact) -> Fact:
        await self.ensure_initialized()

        saved = await self.cold.put_fact(principal, fact)
        await self._hot_call("write", self.hot.put_fact(principal, saved), principal)

        if self.config.auto_demote:
            await self._demote(principal)
        return saved

    async def update_fact(
        self, principal: str, fact_id: str, changes: dict[str, Any]
    ) -> Fact | None:
        await self.ensure_initialized()

        updated = await self.cold.update_fact(principal, fact_id, changes)
        if updated is not None:
            await self._refresh_hot(principal, updated)
        return updated

    async def delete_fact(
        self, principal: str, fact_id: str, reason: str | None = None
    ) -> bool:
        await self.ensure_initialized()

        if not await self.cold.delete_fact(principal, fact_id, reason):
            return False

        invalidated = await self.cold.get_fact_by_id(principal, fact_id)
        if invalidated is not None:
            await self._refresh_hot(principal, invalidated)
        return True

    async def hard_delete_fact(self, principal: str, fact_id: str) -> bool:
        await self.ensure_initialized()

        deleted = await self.cold.hard_delete_fact(principal, fact_id)
        await self._hot_call(
            "delete", self.hot.hard_delete_fact(principal, fact_id), principal
        )
        return deleted

    async def record_access(
        self, principal: str, fact_ids: list[str], now: datetime
    ) -> None:
        await self.ensure_initialized()

        for fact_id in fact_ids:
            fact = await self.cold.get_fact_by_id(principal, fact_id)
            if fact is None:
                continue
            updated = await self.cold.update_fact(
                principal,
                fact_id,
                {"access_count": fact.access_count + 1, "last_accessed_at": now},
            )
            if updated is not None:
                await self._refresh_hot(principal, updated)

    # Conversations

    async def get_conversation_history(
        self,
        principal: str,
        limit: int | None = None,
        session_id: str | None = None,
    ) -> list[ConversationExchange]:
        await self.ensure_initialized()

        history = await self._hot_call(
            "read", self.hot.get_conversation_history(principal, limit, session_id)
        ) or []

        if limit is None or len(history) < limit:
            cold_history = await self.cold.get_conversation_history(
                principal, limit, session_id
            )
            seen = {h.id for h in history}
            history.extend(h for h in cold_history if h.id not in seen)
            history.sort(key=lambda h: h.timestamp, reverse=True)
            if limit:
                history = history[:limit]

        return history

    async def save_conversation(
        self, principal: str, exchange: ConversationExchange
    ) -> ConversationExchange:
        await self.ensure_initialized()

        saved = await self.cold.save_conversation(principal, exchange)
        await self._hot_call("write", self.hot.save_conversation(principal, saved))
        await self._trim_hot_conversations(principal)
        return saved

    async def delete_conversation(self, principal: str, exchange_id: str) -> bool:
        await self.ensure_initialized()

        deleted = await self.cold.delete_conversation(principal, exchange_id)
        await self._hot_call(
            "delete", self.hot.delete_conversation(principal, exchange_id)
        )
        return deleted

    # Sessions are authoritative in cold only

    async def get_sessions(
        self, principal: str, limit: int | None = None
    ) -> list[Session]:
        await self.ensure_initialized()
        return await self.cold.get_sessions(principal, limit)

    async def get_session(self, principal: str, session_id: str) -> Session | None:
        await self.ensure_initialized()
        return await self.cold.get_session(principal, session_id)

    async def create_session(self, principal: str) -> Session:
        await self.ensure_initialized()
        return await self.cold.create_session(principal)

    async def end_session(
        self, principal: str, session_id: str, summary: str | None = None
    ) -> Session | None:
        await self.ensure_initialized()
        return await self.cold.end_session(principal, session_id, summary)

    # Portability

    async def export_principal(self, principal: str) -> dict[str, list[dict[str, Any]]]:
        await self.ensure_initialized()
        return await self.cold.export_principal(principal)

    async def import_principal(
        self, principal: str, data: dict[str, list[dict[str, Any]]]
    ) -> None:
        await self.ensure_initialized()
        self._complete.discard(principal)
        await self.cold.import_principal(principal, data)

    async def clear_principal(self, principal: str) -> None:
        await self.ensure_initialized()
        self._complete.discard(principal)
        await self.cold.clear_principal(principal)
        await self._hot_call("clear", self.hot.clear_principal(principal))

    # Tier management

    async def _refresh_hot(self, principal: str, fact: Fact) -> None:
        """Mirror a changed fact into hot if hot already holds it."""
        cached = await self._hot_call(
            "read", self.hot.get_fact_by_id(principal, fact.id), principal
        )
        if cached is not None:
            await self._hot_call("write", self.hot.put_fact(principal, fact), principal)

    async def _promote(self, principal: str, facts: list[Fact]) -> None:
        for fact in facts:
            await self._hot_call("promote", self.hot.put_fact(principal, fact), principal)
        if self.config.auto_demote:
            await self._demote(principal)

    async def _load_hot(self, principal: str, facts: list[Fact]) -> None:
        """Promote facts read from cold.

        When the principal's whole fact set fits in hot it is copied over
        and marked complete, so later queries can be answered from hot.
        """
        limit = self.config.hot_fact_limit
        everything = await self.cold.get_facts(
            principal, FactFilter(valid_only=False, limit=limit + 1)
        )
        if len(everything) > limit:
            await self._promote(principal, facts[:limit])
            return

        self._complete.add(principal)
        known = {f.id for f in everything}
        stale = await self._hot_call(
            "read", self.hot.get_facts(principal, FactFilter(valid_only=False)), principal
        )
        for fact in stale or []:
            if fact.id not in known:
                await self._hot_call(
                    "evict", self.hot.hard_delete_fact(principal, fact.id), principal
                )
        await self._promote(principal, everything)

    async def _demote(self, principal: str) -> None:
        """Evict the least recently updated facts until hot is within its limit."""
        hot_facts = await self._hot_call(
            "read", self.hot.get_facts(principal, FactFilter(valid_only=False)), principal
        )
        if not hot_facts or len(hot_facts) <= self.config.hot_fact_limit:
            return

        self._complete.discard(principal)
        hot_facts.sort(key=lambda f: f.updated_at)
        excess = len(hot_facts) - self.config.hot_fact_limit
        for fact in hot_facts[:excess]:
            await self._hot_call("evict", self.hot.hard_delete_fact(principal, fact.id))

    async def _trim_hot_conversations(self, principal: str) -> None:
        """Evict the oldest hot exchanges past hot_conversation_limit."""
        history = await self._hot_call(
            "read", self.hot.get_conversation_history(principal)
        )
        if not history or len(history) <= self.config.hot_conversation_limit:
            return

        # history is most recent first
        for exchange in history[self.config.hot_conversation_limit :]:
            await self._hot_call(
                "evict", self.hot.delete_conversation(principal, exchange.id)
            )

    async def promote_to_hot(self, principal: str, fact_id: str) -> bool:
        """Copy one fact from cold into hot."""
        await self.ensure_initialized()
        fact = await self.cold.get_fact_by_id(principal, fact_id)
        if fact is None:
            return False
        await self._promote(principal, [fact])
        return True

    async def demote_from_hot(self, principal: str, fact_id: str) -> None:
        """Drop one fact from hot. Cold is untouched."""
        await self.ensure_initialized()
        self._complete.discard(principal)
        await self._hot_call("evict", self.hot.hard_delete_fact(principal, fact_id))

    async def warm_cache(self, principal: str) -> int:
        """Load the most recently updated valid facts from cold into hot.

        Returns:
            Number of facts promoted.
        """
        await self.ensure_initialized()
        facts = await self.cold.get_facts(
            principal,
            FactFilter(
                valid_only=True,
                limit=self.config.hot_fact_limit,
                order_by="updated_at",
                order_dir="desc",
            ),
        )
        await self._promote(principal, facts)
        return len(facts)

    async def storage_stats(self, principal: str) -> dict[str, int]:
        """Fact and conversation counts per tier."""
        await self.ensure_initialized()
        everything = FactFilter(valid_only=False)
        hot_facts = await self._hot_call("read", self.hot.get_facts(principal, everything))
        hot_convos = await self._hot_call(
            "read", self.hot.get_conversation_history(principal)
        )
        cold_facts = await self.cold.get_facts(principal, everything)
        cold_convos = await self.cold.get_conversation_history(principal)
        return {
            "hot_facts": len(hot_facts or []),
            "cold_facts": len(cold_facts),
            "hot_conversations": len(hot_convos or []),
            "cold_conversations": len(cold_convos),
        }
