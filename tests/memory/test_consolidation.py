"""Tests for ConsolidationEngine."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from cortex.config import ConsolidationConfig
from cortex.logging import JSONLLogger
from cortex.memory.consolidation import ConsolidationEngine
from cortex.memory.models import Fact, MemoryStage
from cortex.storage import InMemoryFactStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def aged(age: timedelta, access_count: int = 0, **kwargs) -> Fact:
    return Fact(
        subject="User",
        predicate="LOCATION",
        object="Lima",
        created_at=NOW - age,
        updated_at=NOW - age,
        access_count=access_count,
        **kwargs,
    )


@pytest.fixture
def engine() -> ConsolidationEngine:
    return ConsolidationEngine(
        ConsolidationConfig(
            short_term_hours=1,
            working_hours=24,
            working_access_threshold=2,
            long_term_access_threshold=5,
        )
    )


class TestDetermineStage:
    """Tests for the stage classifier."""

    def test_old_and_accessed_is_long_term(self, engine: ConsolidationEngine):
        """25h old with 6 accesses reaches long-term."""
        assert engine.determine_stage(aged(timedelta(hours=25), 6), NOW) == MemoryStage.LONG_TERM

    def test_new_fact_is_short_term(self, engine: ConsolidationEngine):
        assert engine.determine_stage(aged(timedelta(minutes=10)), NOW) == MemoryStage.SHORT_TERM

    def test_age_alone_reaches_working(self, engine: ConsolidationEngine):
        assert engine.determine_stage(aged(timedelta(hours=2)), NOW) == MemoryStage.WORKING

    def test_access_alone_reaches_working(self, engine: ConsolidationEngine):
        assert engine.determine_stage(aged(timedelta(minutes=5), 2), NOW) == MemoryStage.WORKING

    def test_old_but_rarely_accessed_stays_working(self, engine: ConsolidationEngine):
        assert engine.determine_stage(aged(timedelta(days=30), 4), NOW) == MemoryStage.WORKING

    def test_accessed_but_young_stays_working(self, engine: ConsolidationEngine):
        assert engine.determine_stage(aged(timedelta(hours=3), 10), NOW) == MemoryStage.WORKING

    def test_ignores_stored_stage(self, engine: ConsolidationEngine):
        fact = aged(timedelta(minutes=5), memory_stage=MemoryStage.LONG_TERM)
        assert engine.determine_stage(fact, NOW) == MemoryStage.SHORT_TERM


class TestConsolidate:
    """Tests for consolidate()."""

    @pytest.mark.asyncio
    async def test_promotes_and_reports(self, engine: ConsolidationEngine, tmp_path: Path):
        store = InMemoryFactStore()
        audit = JSONLLogger(tmp_path)
        fresh = aged(timedelta(minutes=5))
        working = aged(timedelta(hours=2))
        long_term = aged(timedelta(hours=30), 6)
        for fact in (fresh, working, long_term):
            await store.put_fact("u1", fact)

        report = await engine.consolidate(store, "u1", now=NOW, audit=audit)

        assert (report.promoted, report.demoted, report.unchanged) == (2, 0, 1)
        assert report.regressions == []
        assert (await store.get_fact_by_id("u1", working.id)).memory_stage == MemoryStage.WORKING
        assert (await store.get_fact_by_id("u1", long_term.id)).memory_stage == MemoryStage.LONG_TERM

        entry = json.loads(audit.log_path.read_text().splitlines()[-1])
        assert entry["event"] == "consolidation"
        assert entry["extra"]["promoted"] == 2

    @pytest.mark.asyncio
    async def test_regression_is_stored_and_reported(self, engine: ConsolidationEngine):
        """A stage that ranks below the stored one is applied and flagged."""
        store = InMemoryFactStore()
        fact = aged(timedelta(minutes=5), memory_stage=MemoryStage.LONG_TERM)
        await store.put_fact("u1", fact)

        report = await engine.consolidate(store, "u1", now=NOW)

        assert report.demoted == 1
        assert report.regressions == [fact.id]
        stored = await store.get_fact_by_id("u1", fact.id)
        assert stored.memory_stage == MemoryStage.SHORT_TERM

    @pytest.mark.asyncio
    async def test_facts_by_stage(self, engine: ConsolidationEngine):
        store = InMemoryFactStore()
        await store.put_fact("u1", aged(timedelta(hours=1), memory_stage=MemoryStage.WORKING))
        await store.put_fact("u1", aged(timedelta(hours=1)))

        working = await engine.facts_by_stage(store, "u1", MemoryStage.WORKING)

        assert len(working) == 1


class TestPruneShortTerm:
    """Tests for prune_short_term()."""

    @pytest.mark.asyncio
    async def test_prunes_old_unaccessed_short_term_facts(self, engine: ConsolidationEngine):
        store = InMemoryFactStore()
        stale = aged(timedelta(hours=30))
        accessed = aged(timedelta(hours=30), 1)
        recent = aged(timedelta(hours=2))
        working = aged(timedelta(hours=30), memory_stage=MemoryStage.WORKING)
        for fact in (stale, accessed, recent, working):
            await store.put_fact("u1", fact)

        pruned = await engine.prune_short_term(store, "u1", max_age_hours=24, now=NOW)

        assert pruned == 1
        invalidated = await store.get_fact_by_id("u1", stale.id)
        assert not invalidated.is_valid
        assert invalidated.metadata["invalidation_reason"] == "short-term-expired"
        assert len(await store.get_facts("u1")) == 3
