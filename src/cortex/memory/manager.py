"""Memory manager: the entry point that ties storage, extraction and maintenance together."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any

from ..config import CortexConfig
from ..errors import CortexError, NotFoundError
from ..llm import LLMClient
from ..logging import JSONLLogger
from ..session import PrincipalRegistry
from ..storage import FactStore, InMemoryFactStore, SQLiteFactStore, TieredStore
from .cache import QueryCache
from .consolidation import ConsolidationEngine, ConsolidationReport
from .decay import DecayEngine
from .extractor import FactExtractor, normalize_predicate
from .models import (
    CRITICAL_IMPORTANCE,
    ConversationExchange,
    ExtractionResult,
    Fact,
    FactFilter,
    HydratedContext,
    Session,
    utcnow,
)
from .pipeline import ExtractionPipeline

logger = logging.getLogger(__name__)


def _truncate(text: str, length: int) -> str:
    return text if len(text) <= length else text[: length - 3] + "..."


def format_for_prompt(
    facts: list[Fact], history: list[ConversationExchange] | None = None
) -> str:
    """Format facts as a block for injection into a system prompt.

    Args:
        facts: Facts to format, safety-critical ones first.
        history: Recent exchanges, most recent first.

    Returns:
        Tagged memory block, or empty string if there is nothing to show.
    """
    if not facts and not history:
        return ""

    sections = []
    if facts:
        lines = []
        for fact in facts:
            marker = " (critical)" if fact.is_critical else ""
            lines.append(f"- {fact.subject} {fact.predicate}{marker}: {fact.object}")
        sections.append("What you know about the user:\n" + "\n".join(lines))
    if history:
        topics = [f'- "{_truncate(h.user_message, 50)}"' for h in reversed(history)]
        sections.append("Recent topics:\n" + "\n".join(topics))
    content = "\n\n".join(sections)

    return f"""<memory>
{content}
</memory>"""


class MemoryManager:
    """Orchestrates memory operations for many principals.

    Reads go through ``hydrate`` (cached, decay-aware), writes of
    conversation turns through ``digest`` (queued extraction). Direct fact
    edits and maintenance passes are serialized with extraction through the
    shared per-principal locks, and every change invalidates the principal's
    cached contexts.
    """

    def __init__(
        self,
        store: FactStore,
        llm_client: LLMClient | None = None,
        config: CortexConfig | None = None,
        audit: JSONLLogger | None = None,
        registry: PrincipalRegistry | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Fact store, usually a TieredStore.
            llm_client: LLM used for extraction. Without one, digest is unavailable.
            config: Engine configuration. Defaults apply when omitted.
            audit: Optional JSONL event logger.
            registry: Per-principal state; a fresh one is created when omitted.
        """
        self.store = store
        self.config = config or CortexConfig()
        self.audit = audit
        self.registry = registry or PrincipalRegistry()
        self.cache = QueryCache(self.config.cache)
        self.decay = DecayEngine(self.config.decay)
        self.consolidation = ConsolidationEngine(self.config.consolidation)

        self.pipeline: ExtractionPipeline | None = None
        if llm_client is not None:
            self.pipeline = ExtractionPipeline(
                store,
                FactExtractor(llm_client, self.config.pipeline),
                config=self.config.pipeline,
                registry=self.registry,
                audit=audit,
                on_applied=self.cache.invalidate,
            )

    @classmethod
    def from_config(
        cls,
        config: CortexConfig,
        llm_client: LLMClient | None = None,
        audit: JSONLLogger | None = None,
    ) -> MemoryManager:
        """Build a manager over SQLite (cold) and in-process memory (hot)."""
        store = TieredStore(
            hot=InMemoryFactStore(),
            cold=SQLiteFactStore(config.db_path),
            config=config.tiered,
        )
        if audit is None:
            audit = JSONLLogger(config.log_dir)
        return cls(store, llm_client=llm_client, config=config, audit=audit)

    def _require_pipeline(self) -> ExtractionPipeline:
        if self.pipeline is None:
            raise CortexError("No LLM client configured; digestion is unavailable")
        return self.pipeline

    # Read path

    async def hydrate(
        self,
        principal: str,
        message: str,
        max_facts: int | None = None,
        predicates: list[str] | None = None,
    ) -> HydratedContext:
        """Build the memory context to answer a message.

        Every valid safety-critical fact is included, even past max_facts.
        The rest of the budget is filled with the most recently updated facts
        that are confident enough and have not decayed below the retrieval
        threshold. The last few exchanges are attached as recent history.
        """
        # Option overrides change the result, so only default lookups are cached
        use_cache = max_facts is None and predicates is None
        if use_cache:
            cached = self.cache.get(principal, message)
            if cached is not None:
                return cached

        limit = max_facts or self.config.hydrate.max_facts
        # Critical facts are fetched on their own so no window can hide them
        critical = await self.store.get_facts(
            principal,
            FactFilter(
                predicates=predicates,
                min_importance=CRITICAL_IMPORTANCE,
                order_by="updated_at",
                order_dir="desc",
            ),
        )
        recent = await self.store.get_facts(
            principal,
            FactFilter(
                predicates=predicates,
                order_by="updated_at",
                order_dir="desc",
                limit=limit * 3,
            ),
        )

        now = utcnow()
        regular = self.decay.filter_by_weight(
            [
                f
                for f in recent
                if not f.is_critical and f.confidence >= self.config.hydrate.min_confidence
            ],
            now=now,
        )
        selected = critical + regular[: max(0, limit - len(critical))]

        if selected:
            await self._record_access(principal, [f.id for f in selected], now)

        history = await self.store.get_conversation_history(
            principal, limit=self.config.hydrate.max_history
        )
        compiled = format_for_prompt(selected, history)
        context = HydratedContext(
            compiled_prompt=compiled,
            facts=selected,
            estimated_tokens=math.ceil(len(compiled) / 4),
            recent_history=history,
        )
        if use_cache:
            self.cache.set(principal, message, context)
        return context

    async def _record_access(
        self, principal: str, fact_ids: list[str], now: datetime
    ) -> None:
        try:
            async with self.registry.get_lock(principal):
                await self.store.record_access(principal, fact_ids, now)
        except CortexError as e:
            logger.warning("Failed to record access for %s: %s", principal, e)

    # Write path

    async def _ensure_session(self, principal: str) -> str:
        session_id = self.registry.active_session(principal)
        if session_id is None:
            session = await self.store.create_session(principal)
            self.registry.set_session(principal, session.id)
            session_id = session.id
        return session_id

    async def _save_exchange(
        self, principal: str, user_message: str, assistant_response: str
    ) -> str:
        session_id = await self._ensure_session(principal)
        await self.store.save_conversation(
            principal,
            ConversationExchange(
                principal=principal,
                session_id=session_id,
                user_message=user_message,
                assistant_response=assistant_response,
            ),
        )
        self.registry.count_message(principal)
        # Cached contexts carry the recent history
        self.cache.invalidate(principal)
        return session_id

    async def digest(
        self, principal: str, user_message: str, assistant_response: str
    ) -> None:
        """Record an exchange and queue it for extraction.

        Returns as soon as the exchange is queued. A storage failure while
        saving the exchange is logged; extraction is still queued.
        """
        pipeline = self._require_pipeline()
        try:
            session_id = await self._save_exchange(
                principal, user_message, assistant_response
            )
        except CortexError as e:
            logger.warning("Failed to save exchange for %s: %s", principal, e)
            session_id = self.registry.active_session(principal) or ""

        pipeline.enqueue(principal, session_id, user_message, assistant_response)

    async def digest_now(
        self, principal: str, user_message: str, assistant_response: str
    ) -> ExtractionResult:
        """Record an exchange and extract from it before returning."""
        pipeline = self._require_pipeline()
        session_id = await self._save_exchange(principal, user_message, assistant_response)
        return await pipeline.extract_now(
            principal, session_id, user_message, assistant_response
        )

    # Direct fact management

    async def get_facts(
        self, principal: str, fact_filter: FactFilter | None = None
    ) -> list[Fact]:
        return await self.store.get_facts(principal, fact_filter)

    async def add_fact(
        self,
        principal: str,
        subject: str,
        predicate: str,
        object: str,
        confidence: float = 1.0,
        importance: int = 5,
    ) -> Fact:
        """Store a fact directly, bypassing extraction.

        A valid fact with the same subject and predicate is updated in
        place (same object too, for multi-valued predicates).
        """
        predicate = normalize_predicate(predicate)
        multi_valued = predicate in self.config.pipeline.multi_valued_predicates

        async with self.registry.get_lock(principal):
            session_id = await self._ensure_session(principal)
            fact = await self.store.upsert_fact(
                principal,
                Fact(
                    subject=subject,
                    predicate=predicate,
                    object=object,
                    confidence=confidence,
                    importance=importance,
                    source=session_id,
                ),
                match_object=multi_valued,
            )

        self.cache.invalidate(principal)
        return fact

    async def delete_fact(
        self, principal: str, fact_id: str, reason: str | None = None
    ) -> None:
        """Soft-delete a fact.

        Raises:
            NotFoundError: If the principal has no fact with this id.
        """
        async with self.registry.get_lock(principal):
            deleted = await self.store.delete_fact(principal, fact_id, reason)
        if not deleted:
            raise NotFoundError("fact", fact_id)
        self.cache.invalidate(principal)

    async def clear_facts(self, principal: str) -> int:
        """Permanently remove every fact of a principal. Returns how many."""
        async with self.registry.get_lock(principal):
            facts = await self.store.get_facts(principal, FactFilter(valid_only=False))
            for fact in facts:
                await self.store.hard_delete_fact(principal, fact.id)
        self.cache.invalidate(principal)
        return len(facts)

    # Sessions

    async def start_session(self, principal: str) -> Session:
        """Start a new session, ending the active one first."""
        if self.registry.active_session(principal) is not None:
            await self.end_session(principal)

        session = await self.store.create_session(principal)
        self.registry.set_session(principal, session.id)
        return session

    async def end_session(
        self, principal: str, summary: str | None = None
    ) -> Session | None:
        """End the active session and drop the principal's runtime state.

        Returns:
            The ended session, or None if the principal had no active session.
        """
        session_id = self.registry.active_session(principal)
        if session_id is None:
            return None

        session = await self.store.end_session(principal, session_id, summary)
        self.registry.end(principal)
        return session

    async def get_history(
        self,
        principal: str,
        limit: int | None = None,
        session_id: str | None = None,
    ) -> list[ConversationExchange]:
        return await self.store.get_conversation_history(principal, limit, session_id)

    async def export_principal(self, principal: str) -> dict[str, list[dict[str, Any]]]:
        return await self.store.export_principal(principal)

    # Maintenance

    async def consolidate(
        self, principal: str, now: datetime | None = None
    ) -> ConsolidationReport:
        """Reclassify the principal's facts into memory stages."""
        async with self.registry.get_lock(principal):
            report = await self.consolidation.consolidate(
                self.store, principal, now=now, audit=self.audit
            )
        if report.promoted or report.demoted:
            self.cache.invalidate(principal)
        return report

    async def prune(self, principal: str, now: datetime | None = None) -> list[Fact]:
        """Soft-delete the principal's decayed facts."""
        async with self.registry.get_lock(principal):
            pruned = await self.decay.apply_pruning(
                self.store, principal, now=now, audit=self.audit
            )
        if pruned:
            self.cache.invalidate(principal)
        return pruned

    @property
    def pending_extractions(self) -> int:
        return self.pipeline.pending if self.pipeline is not None else 0

    async def drain(self) -> None:
        """Wait for every queued extraction to finish."""
        if self.pipeline is not None:
            await self.pipeline.drain()

    async def close(self) -> None:
        """Finish queued work and release the store."""
        if self.pipeline is not None:
            await self.pipeline.stop(drain=True)
        await self.store.close()
