"""Abstract fact storage interface.

Every backend (in-memory, SQLite, tiered) implements FactStore. Facts,
conversations and sessions are partitioned by principal.

Lookups by id return None (or False) for a missing item instead of raising;
backend failures surface as StorageError.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from ..memory.models import ConversationExchange, Fact, FactFilter, Session


class FactStore(ABC):
    """Base interface for all fact stores."""

    def __init__(self) -> None:
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (create tables, directories, ...)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    async def ensure_initialized(self) -> None:
        """Initialize lazily on first use."""
        if not self._initialized:
            await self.initialize()

    # Facts

    @abstractmethod
    async def get_facts(
        self, principal: str, fact_filter: FactFilter | None = None
    ) -> list[Fact]:
        """Get facts for a principal. Valid facts only unless the filter says otherwise."""
        ...

    @abstractmethod
    async def get_fact_by_id(self, principal: str, fact_id: str) -> Fact | None:
        """Get one fact, or None if it does not exist."""
        ...

    @abstractmethod
    async def upsert_fact(
        self, principal: str, fact: Fact, *, match_object: bool = False
    ) -> Fact:
        """Insert a fact, or update the valid fact it replaces.

        The match is on (subject, predicate) among valid facts, plus object
        when match_object is set (multi-valued predicates). An update keeps
        the existing id and created_at.
        """
        ...

    @abstractmethod
    async def put_fact(self, principal: str, fact: Fact) -> Fact:
        """Store a complete fact as-is, keyed by its id."""
        ...

    @abstractmethod
    async def update_fact(
        self, principal: str, fact_id: str, changes: dict[str, Any]
    ) -> Fact | None:
        """Apply partial changes. Returns None if the fact does not exist."""
        ...

    @abstractmethod
    async def delete_fact(
        self, principal: str, fact_id: str, reason: str | None = None
    ) -> bool:
        """Soft-delete (invalidate) a fact. Returns False if it does not exist."""
        ...

    @abstractmethod
    async def hard_delete_fact(self, principal: str, fact_id: str) -> bool:
        """Permanently remove a fact. Returns False if it does not exist."""
        ...

    async def record_access(
        self, principal: str, fact_ids: list[str], now: datetime
    ) -> None:
        """Bump access counters for retrieved facts."""
        for fact_id in fact_ids:
            fact = await self.get_fact_by_id(principal, fact_id)
            if fact is None:
                continue
            await self.update_fact(
                principal,
                fact_id,
                {"access_count": fact.access_count + 1, "last_accessed_at": now},
            )

    # Conversations

    @abstractmethod
    async def get_conversation_history(
        self,
        principal: str,
        limit: int | None = None,
        session_id: str | None = None,
    ) -> list[ConversationExchange]:
        """Get exchanges, most recent first."""
        ...

    @abstractmethod
    async def save_conversation(
        self, principal: str, exchange: ConversationExchange
    ) -> ConversationExchange:
        """Store an exchange and bump its session's message count."""
        ...

    @abstractmethod
    async def delete_conversation(self, principal: str, exchange_id: str) -> bool:
        """Remove one exchange. Returns False if it does not exist."""
        ...

    # Sessions

    @abstractmethod
    async def get_sessions(
        self, principal: str, limit: int | None = None
    ) -> list[Session]:
        """Get sessions, most recently started first."""
        ...

    @abstractmethod
    async def get_session(self, principal: str, session_id: str) -> Session | None:
        ...

    @abstractmethod
    async def create_session(self, principal: str) -> Session:
        ...

    @abstractmethod
    async def end_session(
        self, principal: str, session_id: str, summary: str | None = None
    ) -> Session | None:
        """Mark a session ended. Returns None if it does not exist."""
        ...

    # Portability

    async def export_principal(self, principal: str) -> dict[str, list[dict[str, Any]]]:
        """Dump every fact (valid or not), exchange and session of a principal."""
        facts = await self.get_facts(principal, FactFilter(valid_only=False))
        conversations = await self.get_conversation_history(principal)
        sessions = await self.get_sessions(principal)
        return {
            "facts": [f.to_dict() for f in facts],
            "conversations": [c.to_dict() for c in conversations],
            "sessions": [s.to_dict() for s in sessions],
        }

    @abstractmethod
    async def import_principal(
        self, principal: str, data: dict[str, list[dict[str, Any]]]
    ) -> None:
        """Load data produced by export_principal."""
        ...

    @abstractmethod
    async def clear_principal(self, principal: str) -> None:
        """Remove everything stored for a principal."""
        ...
