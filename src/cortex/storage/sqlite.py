"""SQLite storage for memory facts.

The durable cold tier. Timestamps are stored as ISO-8601 UTC strings with
microsecond precision so lexical order matches time order.

sqlite3 calls block, so every statement runs on one dedicated worker thread
owned by the store. The event loop stays free while the database works, and
the single thread serializes all use of the connection.
"""

import asyncio
import json
import sqlite3
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from ..errors import StorageError
from ..memory.models import (
    ConversationExchange,
    Fact,
    FactFilter,
    MemoryStage,
    Session,
    new_id,
    utcnow,
)
from .base import FactStore

T = TypeVar("T")

FACT_COLUMNS = (
    "id, subject, predicate, object, confidence, importance, source, "
    "created_at, updated_at, invalidated_at, memory_stage, access_count, "
    "last_accessed_at, sentiment, metadata"
)

SESSION_COLUMNS = "id, principal, started_at, ended_at, message_count, summary"

CONVERSATION_COLUMNS = (
    "id, principal, session_id, user_message, assistant_response, timestamp, metadata"
)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SQLiteFactStore(FactStore):
    """Persistent storage for facts, conversations and sessions using SQLite."""

    def __init__(self, db_path: Path) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        super().__init__()
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cortex-sqlite")

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking database call on the store's worker thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Opened on the worker thread but also usable from tests
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one transaction, mapping failures to StorageError."""
        try:
            conn = self._get_connection()
            with conn:
                yield conn
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"SQLite failure on {self.db_path}: {e}") from e

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        await self._run(self._create_schema)
        self._initialized = True

    def _create_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS facts (
                    id                TEXT PRIMARY KEY,
                    principal         TEXT NOT NULL,
                    subject           TEXT NOT NULL,
                    predicate         TEXT NOT NULL,
                    object            TEXT NOT NULL,
                    confidence        REAL NOT NULL DEFAULT 0.8,
                    importance        INTEGER NOT NULL DEFAULT 5,
                    source            TEXT NOT NULL DEFAULT '',
                    created_at        TEXT NOT NULL,
                    updated_at        TEXT NOT NULL,
                    invalidated_at    TEXT,
                    memory_stage      TEXT NOT NULL DEFAULT 'short-term',
                    access_count      INTEGER NOT NULL DEFAULT 0,
                    last_accessed_at  TEXT,
                    sentiment         TEXT,
                    metadata          TEXT NOT NULL DEFAULT '{}'
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_facts_key "
                "ON facts(principal, subject, predicate)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id             TEXT PRIMARY KEY,
                    principal      TEXT NOT NULL,
                    started_at     TEXT NOT NULL,
                    ended_at       TEXT,
                    message_count  INTEGER NOT NULL DEFAULT 0,
                    summary        TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id                  TEXT PRIMARY KEY,
                    principal           TEXT NOT NULL,
                    session_id          TEXT NOT NULL,
                    user_message        TEXT NOT NULL,
                    assistant_response  TEXT NOT NULL,
                    timestamp           TEXT NOT NULL,
                    metadata            TEXT NOT NULL DEFAULT '{}'
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_principal "
                "ON conversations(principal, timestamp)"
            )

    async def close(self) -> None:
        """Close the database connection."""
        await self._run(self._close)
        self._initialized = False

    def _close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # Facts

    async def get_facts(
        self, principal: str, fact_filter: FactFilter | None = None
    ) -> list[Fact]:
        await self.ensure_initialized()
        return await self._run(self._get_facts, principal, fact_filter or FactFilter())

    def _get_facts(self, principal: str, fact_filter: FactFilter) -> list[Fact]:
        clauses = ["principal = ?"]
        params: list[Any] = [principal]
        if fact_filter.subject is not None:
            clauses.append("subject = ?")
            params.append(fact_filter.subject)
        if fact_filter.predicate is not None:
            clauses.append("predicate = ?")
            params.append(fact_filter.predicate)
        if fact_filter.predicates:
            placeholders = ", ".join("?" for _ in fact_filter.predicates)
            clauses.append(f"predicate IN ({placeholders})")
            params.extend(fact_filter.predicates)
        if fact_filter.min_importance is not None:
            clauses.append("importance >= ?")
            params.append(fact_filter.min_importance)
        if fact_filter.valid_only:
            clauses.append("invalidated_at IS NULL")

        sql = f"SELECT {FACT_COLUMNS} FROM facts WHERE {' AND '.join(clauses)}"
        if fact_filter.order_by:
            # order_by is validated against FactFilter.ORDER_FIELDS
            direction = "DESC" if fact_filter.order_dir == "desc" else "ASC"
            sql += f" ORDER BY {fact_filter.order_by} {direction}"
        else:
            sql += " ORDER BY rowid"
        if fact_filter.limit:
            sql += " LIMIT ?"
            params.append(fact_filter.limit)

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_fact(row) for row in rows]

    async def get_fact_by_id(self, principal: str, fact_id: str) -> Fact | None:
        await self.ensure_initialized()
        return await self._run(self._get_fact_by_id, principal, fact_id)

    def _get_fact_by_id(self, principal: str, fact_id: str) -> Fact | None:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {FACT_COLUMNS} FROM facts WHERE principal = ? AND id = ?",
                (principal, fact_id),
            ).fetchone()
        return self._row_to_fact(row) if row else None

    async def upsert_fact(
        self, principal: str, fact: Fact, *, match_object: bool = False
    ) -> Fact:
        await self.ensure_initialized()
        return await self._run(self._upsert_fact, principal, fact, match_object)

    def _upsert_fact(self, principal: str, fact: Fact, match_object: bool) -> Fact:
        now = utcnow()
        sql = (
            "SELECT id, created_at FROM facts WHERE principal = ? AND subject = ? "
            "AND predicate = ? AND invalidated_at IS NULL"
        )
        params: list[Any] = [principal, fact.subject, fact.predicate]
        if match_object:
            sql += " AND object = ?"
            params.append(fact.object)

        with self._transaction() as conn:
            row = conn.execute(sql + " ORDER BY rowid LIMIT 1", params).fetchone()
            if row is not None:
                saved = replace(
                    fact,
                    id=row["id"],
                    created_at=_dt(row["created_at"]),
                    updated_at=now,
                )
                self._write_fact(conn, principal, saved, replace_row=True)
            else:
                saved = replace(fact, id=new_id(), created_at=now, updated_at=now)
                self._write_fact(conn, principal, saved)
        return saved

    async def put_fact(self, principal: str, fact: Fact) -> Fact:
        await self.ensure_initialized()
        await self._run(self._put_fact, principal, fact)
        return fact

    def _put_fact(self, principal: str, fact: Fact) -> None:
        with self._transaction() as conn:
            self._write_fact(conn, principal, fact, replace_row=True)

    async def update_fact(
        self, principal: str, fact_id: str, changes: dict[str, Any]
    ) -> Fact | None:
        await self.ensure_initialized()
        return await self._run(self._update_fact, principal, fact_id, changes)

    def _update_fact(
        self, principal: str, fact_id: str, changes: dict[str, Any]
    ) -> Fact | None:
        fact = self._get_fact_by_id(principal, fact_id)
        if fact is None:
            return None

        changes = {k: v for k, v in changes.items() if k not in ("id", "updated_at")}
        updated = replace(fact, **changes, updated_at=utcnow())
        with self._transaction() as conn:
            self._write_fact(conn, principal, updated, replace_row=True)
        return updated

    async def delete_fact(
        self, principal: str, fact_id: str, reason: str | None = None
    ) -> bool:
        await self.ensure_initialized()
        return await self._run(self._delete_fact, principal, fact_id, reason)

    def _delete_fact(self, principal: str, fact_id: str, reason: str | None) -> bool:
        fact = self._get_fact_by_id(principal, fact_id)
        if fact is None:
            return False
        if not fact.is_valid:
            return True

        metadata = dict(fact.metadata)
        if reason:
            metadata["invalidation_reason"] = reason
        with self._transaction() as conn:
            conn.execute(
                "UPDATE facts SET invalidated_at = ?, metadata = ? "
                "WHERE principal = ? AND id = ?",
                (_ts(utcnow()), json.dumps(metadata), principal, fact_id),
            )
        return True

    async def hard_delete_fact(self, principal: str, fact_id: str) -> bool:
        await self.ensure_initialized()
        return await self._run(self._delete_row, "facts", principal, fact_id)

    def _delete_row(self, table: str, principal: str, item_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE principal = ? AND id = ?",
                (principal, item_id),
            )
        return cursor.rowcount > 0

    # Conversations

    async def get_conversation_history(
        self,
        principal: str,
        limit: int | None = None,
        session_id: str | None = None,
    ) -> list[ConversationExchange]:
        await self.ensure_initialized()
        return await self._run(self._get_conversation_history, principal, limit, session_id)

    def _get_conversation_history(
        self, principal: str, limit: int | None, session_id: str | None
    ) -> list[ConversationExchange]:
        sql = f"SELECT {CONVERSATION_COLUMNS} FROM conversations WHERE principal = ?"
        params: list[Any] = [principal]
        if session_id:
            sql += " AND session_id = ?"
            params.append(session_id)
        sql += " ORDER BY timestamp DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            ConversationExchange(
                id=row["id"],
                principal=row["principal"],
                session_id=row["session_id"],
                user_message=row["user_message"],
                assistant_response=row["assistant_response"],
                timestamp=_dt(row["timestamp"]),
                metadata=json.loads(row["metadata"]),
            )
            for row in rows
        ]

    async def save_conversation(
        self, principal: str, exchange: ConversationExchange
    ) -> ConversationExchange:
        await self.ensure_initialized()
        await self._run(self._save_conversation, principal, exchange)
        return exchange

    def _save_conversation(self, principal: str, exchange: ConversationExchange) -> None:
        with self._transaction() as conn:
            self._write_conversation(conn, principal, exchange)
            conn.execute(
                "UPDATE sessions SET message_count = message_count + 1 "
                "WHERE principal = ? AND id = ?",
                (principal, exchange.session_id),
            )

    async def delete_conversation(self, principal: str, exchange_id: str) -> bool:
        await self.ensure_initialized()
        return await self._run(self._delete_row, "conversations", principal, exchange_id)

    # Sessions

    async def get_sessions(
        self, principal: str, limit: int | None = None
    ) -> list[Session]:
        await self.ensure_initialized()
        return await self._run(self._get_sessions, principal, limit)

    def _get_sessions(self, principal: str, limit: int | None) -> list[Session]:
        sql = (
            f"SELECT {SESSION_COLUMNS} FROM sessions "
            "WHERE principal = ? ORDER BY started_at DESC"
        )
        params: list[Any] = [principal]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_session(row) for row in rows]

    async def get_session(self, principal: str, session_id: str) -> Session | None:
        await self.ensure_initialized()
        return await self._run(self._get_session, principal, session_id)

    def _get_session(self, principal: str, session_id: str) -> Session | None:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {SESSION_COLUMNS} FROM sessions WHERE principal = ? AND id = ?",
                (principal, session_id),
            ).fetchone()
        return self._row_to_session(row) if row else None

    async def create_session(self, principal: str) -> Session:
        await self.ensure_initialized()
        session = Session(principal=principal)
        await self._run(self._write_session, session)
        return session

    async def end_session(
        self, principal: str, session_id: str, summary: str | None = None
    ) -> Session | None:
        await self.ensure_initialized()
        return await self._run(self._end_session, principal, session_id, summary)

    def _end_session(
        self, principal: str, session_id: str, summary: str | None
    ) -> Session | None:
        session = self._get_session(principal, session_id)
        if session is None:
            return None

        session.ended_at = utcnow()
        if summary:
            session.summary = summary
        self._write_session(session)
        return session

    # Portability

    async def import_principal(
        self, principal: str, data: dict[str, list[dict[str, Any]]]
    ) -> None:
        await self.ensure_initialized()
        await self._run(self._import_principal, principal, data)

    def _import_principal(
        self, principal: str, data: dict[str, list[dict[str, Any]]]
    ) -> None:
        with self._transaction() as conn:
            for raw in data.get("facts", []):
                self._write_fact(conn, principal, Fact.from_dict(raw), replace_row=True)
            for raw in data.get("conversations", []):
                self._write_conversation(
                    conn, principal, ConversationExchange.from_dict(raw)
                )
        for raw in data.get("sessions", []):
            session = Session.from_dict(raw)
            session.principal = principal
            self._write_session(session)

    async def clear_principal(self, principal: str) -> None:
        await self.ensure_initialized()
        await self._run(self._clear_principal, principal)

    def _clear_principal(self, principal: str) -> None:
        with self._transaction() as conn:
            for table in ("facts", "sessions", "conversations"):
                conn.execute(f"DELETE FROM {table} WHERE principal = ?", (principal,))

    # Row helpers

    def _write_fact(
        self,
        conn: sqlite3.Connection,
        principal: str,
        fact: Fact,
        replace_row: bool = False,
    ) -> None:
        verb = "INSERT OR REPLACE" if replace_row else "INSERT"
        conn.execute(
            f"{verb} INTO facts (principal, {FACT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                principal,
                fact.id,
                fact.subject,
                fact.predicate,
                fact.object,
                fact.confidence,
                fact.importance,
                fact.source,
                _ts(fact.created_at),
                _ts(fact.updated_at),
                _ts(fact.invalidated_at),
                fact.memory_stage.value,
                fact.access_count,
                _ts(fact.last_accessed_at),
                fact.sentiment,
                json.dumps(fact.metadata),
            ),
        )

    def _write_conversation(
        self, conn: sqlite3.Connection, principal: str, exchange: ConversationExchange
    ) -> None:
        conn.execute(
            f"INSERT OR REPLACE INTO conversations ({CONVERSATION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                exchange.id,
                principal,
                exchange.session_id,
                exchange.user_message,
                exchange.assistant_response,
                _ts(exchange.timestamp),
                json.dumps(exchange.metadata),
            ),
        )

    def _write_session(self, session: Session) -> None:
        with self._transaction() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO sessions ({SESSION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.principal,
                    _ts(session.started_at),
                    _ts(session.ended_at),
                    session.message_count,
                    session.summary,
                ),
            )

    def _row_to_fact(self, row: sqlite3.Row) -> Fact:
        """Convert a database row to a Fact."""
        return Fact(
            id=row["id"],
            subject=row["subject"],
            predicate=row["predicate"],
            object=row["object"],
            confidence=row["confidence"],
            importance=row["importance"],
            source=row["source"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            invalidated_at=_dt(row["invalidated_at"]),
            memory_stage=MemoryStage(row["memory_stage"]),
            access_count=row["access_count"],
            last_accessed_at=_dt(row["last_accessed_at"]),
            sentiment=row["sentiment"],
            metadata=json.loads(row["metadata"]),
        )

    def _row_to_session(self, row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            principal=row["principal"],
            started_at=_dt(row["started_at"]),
            ended_at=_dt(row["ended_at"]),
            message_count=row["message_count"],
            summary=row["summary"],
        )
