"""Memory consolidation through the three-stage model.

- short-term: just learned, may not persist
- working: old enough or accessed enough to be in active use
- long-term: both old enough and accessed enough

``determine_stage`` is a pure classifier with no memory of the stored
stage, so a recomputed stage can rank below the stored one. ``consolidate``
stores whatever the classifier says and reports such regressions rather
than suppressing them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ..config import ConsolidationConfig
from .models import Fact, MemoryStage, utcnow

if TYPE_CHECKING:
    from ..logging import JSONLLogger
    from ..storage.base import FactStore

logger = logging.getLogger(__name__)

SHORT_TERM_EXPIRED = "short-term-expired"


@dataclass
class ConsolidationReport:
    """Outcome of one consolidation pass."""

    promoted: int = 0
    demoted: int = 0
    unchanged: int = 0
    regressions: list[str] = field(default_factory=list)


class ConsolidationEngine:
    """Classifies facts into memory stages and applies the result."""

    def __init__(self, config: ConsolidationConfig | None = None) -> None:
        self.config = config or ConsolidationConfig()

    def determine_stage(self, fact: Fact, now: datetime | None = None) -> MemoryStage:
        """Stage a fact belongs in given its age and access count."""
        now = now or utcnow()
        age_hours = (now - fact.created_at) / timedelta(hours=1)

        if (
            age_hours >= self.config.working_hours
            and fact.access_count >= self.config.long_term_access_threshold
        ):
            return MemoryStage.LONG_TERM

        if (
            age_hours >= self.config.short_term_hours
            or fact.access_count >= self.config.working_access_threshold
        ):
            return MemoryStage.WORKING

        return MemoryStage.SHORT_TERM

    async def consolidate(
        self,
        store: FactStore,
        principal: str,
        now: datetime | None = None,
        audit: JSONLLogger | None = None,
    ) -> ConsolidationReport:
        """Reclassify every valid fact of a principal and store changed stages."""
        now = now or utcnow()
        report = ConsolidationReport()

        for fact in await store.get_facts(principal):
            target = self.determine_stage(fact, now)
            if target == fact.memory_stage:
                report.unchanged += 1
                continue

            await store.update_fact(principal, fact.id, {"memory_stage": target})

            if target.rank > fact.memory_stage.rank:
                report.promoted += 1
                logger.debug(
                    "%s: %s -> %s", fact.predicate, fact.memory_stage.value, target.value
                )
            else:
                report.demoted += 1
                report.regressions.append(fact.id)
                logger.warning(
                    "Stage regression for fact %s (%s): %s -> %s",
                    fact.id,
                    fact.predicate,
                    fact.memory_stage.value,
                    target.value,
                )

        if audit is not None:
            audit.log_consolidation(
                principal, report.promoted, report.demoted, report.unchanged
            )
        return report

    async def facts_by_stage(
        self, store: FactStore, principal: str, stage: MemoryStage
    ) -> list[Fact]:
        facts = await store.get_facts(principal)
        return [f for f in facts if f.memory_stage == stage]

    async def prune_short_term(
        self,
        store: FactStore,
        principal: str,
        max_age_hours: float = 24,
        now: datetime | None = None,
        audit: JSONLLogger | None = None,
    ) -> int:
        """Soft-delete short-term facts older than max_age_hours that were never accessed.

        Unlike reclassification this cannot be undone.

        Returns:
            Number of facts pruned.
        """
        now = now or utcnow()
        cutoff = now - timedelta(hours=max_age_hours)

        pruned = 0
        for fact in await self.facts_by_stage(store, principal, MemoryStage.SHORT_TERM):
            if fact.created_at < cutoff and fact.access_count == 0:
                if await store.delete_fact(principal, fact.id, SHORT_TERM_EXPIRED):
                    pruned += 1
                    if audit is not None:
                        audit.log_pruned(principal, fact.id, SHORT_TERM_EXPIRED)
        return pruned
