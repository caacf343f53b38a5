"""Behaviour shared by every concrete FactStore."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from cortex.memory.models import ConversationExchange, Fact, FactFilter, MemoryStage
from cortex.storage import FactStore, InMemoryFactStore, SQLiteFactStore

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path) -> FactStore:
    if request.param == "memory":
        return InMemoryFactStore()
    return SQLiteFactStore(tmp_path / "facts.db")


def fact(predicate: str = "NAME", obj: str = "Lucas", **kwargs) -> Fact:
    return Fact(subject="User", predicate=predicate, object=obj, **kwargs)


class TestUpsert:
    """Tests for upsert_fact()."""

    @pytest.mark.asyncio
    async def test_insert_assigns_new_id(self, store: FactStore):
        proposed = fact()
        saved = await store.upsert_fact("u1", proposed)

        assert saved.id != proposed.id
        assert await store.get_fact_by_id("u1", saved.id) == saved

    @pytest.mark.asyncio
    async def test_same_key_updates_in_place(self, store: FactStore):
        first = await store.upsert_fact("u1", fact("LOCATION", "NYC"))
        second = await store.upsert_fact("u1", fact("LOCATION", "Lima"))

        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.object == "Lima"
        assert len(await store.get_facts("u1", FactFilter(valid_only=False))) == 1

    @pytest.mark.asyncio
    async def test_match_object_inserts_distinct_values(self, store: FactStore):
        await store.upsert_fact("u1", fact("USES_TECH", "React"), match_object=True)
        await store.upsert_fact("u1", fact("USES_TECH", "Go"), match_object=True)
        again = await store.upsert_fact("u1", fact("USES_TECH", "Go"), match_object=True)

        facts = await store.get_facts("u1")
        assert sorted(f.object for f in facts) == ["Go", "React"]
        assert again.id in {f.id for f in facts}

    @pytest.mark.asyncio
    async def test_invalidated_fact_is_not_updated(self, store: FactStore):
        old = await store.upsert_fact("u1", fact("LOCATION", "NYC"))
        await store.delete_fact("u1", old.id)

        new = await store.upsert_fact("u1", fact("LOCATION", "Lima"))

        assert new.id != old.id
        assert not (await store.get_fact_by_id("u1", old.id)).is_valid

    @pytest.mark.asyncio
    async def test_principals_are_isolated(self, store: FactStore):
        await store.upsert_fact("u1", fact())
        assert await store.get_facts("u2") == []


class TestReadWrite:
    """Tests for get/put/update/delete."""

    @pytest.mark.asyncio
    async def test_put_keeps_fact_as_is(self, store: FactStore):
        original = fact(created_at=T0, updated_at=T0, memory_stage=MemoryStage.WORKING)
        await store.put_fact("u1", original)
        assert await store.get_fact_by_id("u1", original.id) == original

    @pytest.mark.asyncio
    async def test_get_missing_fact(self, store: FactStore):
        assert await store.get_fact_by_id("u1", "missing") is None

    @pytest.mark.asyncio
    async def test_filtering_and_ordering(self, store: FactStore):
        for i, (predicate, confidence) in enumerate(
            [("NAME", 0.9), ("LOCATION", 0.6), ("DIET", 0.7)]
        ):
            await store.put_fact(
                "u1",
                fact(predicate, str(i), confidence=confidence,
                     created_at=T0 + timedelta(hours=i), updated_at=T0 + timedelta(hours=i)),
            )

        default_order = await store.get_facts("u1")
        assert [f.predicate for f in default_order] == ["NAME", "LOCATION", "DIET"]

        by_update = await store.get_facts(
            "u1", FactFilter(order_by="updated_at", order_dir="desc", limit=2)
        )
        assert [f.predicate for f in by_update] == ["DIET", "LOCATION"]

        chosen = await store.get_facts("u1", FactFilter(predicates=["NAME", "DIET"]))
        assert {f.predicate for f in chosen} == {"NAME", "DIET"}

        by_confidence = await store.get_facts("u1", FactFilter(order_by="confidence"))
        assert [f.confidence for f in by_confidence] == [0.6, 0.7, 0.9]

    @pytest.mark.asyncio
    async def test_min_importance_filter(self, store: FactStore):
        allergy = await store.upsert_fact("u1", fact("HAS_ALLERGY", "Peanuts", importance=10))
        await store.upsert_fact("u1", fact("DIET", "Vegan", importance=9))
        await store.upsert_fact("u1", fact("LOCATION", "Lima", importance=5))
        await store.delete_fact("u1", allergy.id)

        critical = await store.get_facts("u1", FactFilter(min_importance=9))
        assert [f.predicate for f in critical] == ["DIET"]

        everything = await store.get_facts("u1", FactFilter(min_importance=9, valid_only=False))
        assert {f.predicate for f in everything} == {"HAS_ALLERGY", "DIET"}

    @pytest.mark.asyncio
    async def test_update_fact(self, store: FactStore):
        saved = await store.upsert_fact("u1", fact())

        updated = await store.update_fact("u1", saved.id, {"memory_stage": MemoryStage.LONG_TERM})

        assert updated.memory_stage == MemoryStage.LONG_TERM
        assert updated.updated_at >= saved.updated_at
        assert (await store.get_fact_by_id("u1", saved.id)).memory_stage == MemoryStage.LONG_TERM

    @pytest.mark.asyncio
    async def test_update_missing_fact(self, store: FactStore):
        assert await store.update_fact("u1", "missing", {"importance": 3}) is None

    @pytest.mark.asyncio
    async def test_soft_delete_keeps_history(self, store: FactStore):
        saved = await store.upsert_fact("u1", fact())

        assert await store.delete_fact("u1", saved.id, "user asked") is True

        assert await store.get_facts("u1") == []
        gone = await store.get_fact_by_id("u1", saved.id)
        assert gone.invalidated_at is not None
        assert gone.metadata["invalidation_reason"] == "user asked"

    @pytest.mark.asyncio
    async def test_delete_missing_fact(self, store: FactStore):
        assert await store.delete_fact("u1", "missing") is False

    @pytest.mark.asyncio
    async def test_hard_delete(self, store: FactStore):
        saved = await store.upsert_fact("u1", fact())

        assert await store.hard_delete_fact("u1", saved.id) is True
        assert await store.get_fact_by_id("u1", saved.id) is None
        assert await store.hard_delete_fact("u1", saved.id) is False

    @pytest.mark.asyncio
    async def test_record_access(self, store: FactStore):
        saved = await store.upsert_fact("u1", fact())

        await store.record_access("u1", [saved.id, "missing"], T0)
        await store.record_access("u1", [saved.id], T0 + timedelta(minutes=1))

        accessed = await store.get_fact_by_id("u1", saved.id)
        assert accessed.access_count == 2
        assert accessed.last_accessed_at == T0 + timedelta(minutes=1)


class TestSessionsAndConversations:
    """Tests for session and conversation storage."""

    @pytest.mark.asyncio
    async def test_session_lifecycle(self, store: FactStore):
        session = await store.create_session("u1")
        assert (await store.get_session("u1", session.id)).ended_at is None

        ended = await store.end_session("u1", session.id, "short chat")

        assert ended.ended_at is not None
        assert (await store.get_session("u1", session.id)).summary == "short chat"

    @pytest.mark.asyncio
    async def test_end_missing_session(self, store: FactStore):
        assert await store.end_session("u1", "missing") is None

    @pytest.mark.asyncio
    async def test_conversation_history(self, store: FactStore):
        session = await store.create_session("u1")
        for i in range(3):
            await store.save_conversation(
                "u1",
                ConversationExchange(
                    principal="u1",
                    session_id=session.id,
                    user_message=f"message {i}",
                    assistant_response="ok",
                    timestamp=T0 + timedelta(minutes=i),
                ),
            )

        history = await store.get_conversation_history("u1", limit=2)

        assert [h.user_message for h in history] == ["message 2", "message 1"]
        assert (await store.get_session("u1", session.id)).message_count == 3
        assert await store.get_conversation_history("u1", session_id="other") == []

    @pytest.mark.asyncio
    async def test_delete_conversation(self, store: FactStore):
        session = await store.create_session("u1")
        kept, dropped = (
            ConversationExchange(principal="u1", session_id=session.id,
                                 user_message=text, assistant_response="ok")
            for text in ("keep", "drop")
        )
        await store.save_conversation("u1", kept)
        await store.save_conversation("u1", dropped)

        assert await store.delete_conversation("u1", dropped.id) is True
        assert await store.delete_conversation("u1", dropped.id) is False
        assert await store.delete_conversation("u2", kept.id) is False

        assert [h.id for h in await store.get_conversation_history("u1")] == [kept.id]

    @pytest.mark.asyncio
    async def test_export_import_and_clear(self, store: FactStore):
        session = await store.create_session("u1")
        saved = await store.upsert_fact("u1", fact())
        await store.save_conversation(
            "u1",
            ConversationExchange(principal="u1", session_id=session.id,
                                 user_message="hi", assistant_response="hello"),
        )

        data = await store.export_principal("u1")
        await store.clear_principal("u1")
        assert await store.get_facts("u1", FactFilter(valid_only=False)) == []

        await store.import_principal("u1", data)

        assert (await store.get_fact_by_id("u1", saved.id)).object == "Lucas"
        assert len(await store.get_conversation_history("u1")) == 1
        assert len(await store.get_sessions("u1")) == 1
