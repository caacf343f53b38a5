"""Time-based decay of facts.

Facts lose relevance as they age without being reinforced, so the agent
forgets stale details. Three predicate classes decay differently:

- permanent: never decay (names, allergies, birthdays, ...)
- ephemeral: decay within hours (what the user is wearing, current mood)
- regular: decay over days; low-confidence facts use a shorter window

A fact reinforced (accessed) at least ``reinforcement_threshold`` times
stops decaying. Safety-critical facts (importance >= 9) are never pruned.

Weights and expiry are pure computations. Soft-deleting prunable facts is
a separate step, ``apply_pruning``, run explicitly by a caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ..config import DecayConfig
from .models import Fact, utcnow

if TYPE_CHECKING:
    from ..logging import JSONLLogger
    from ..storage.base import FactStore

logger = logging.getLogger(__name__)

PRUNE_REASON = "decayed"
REINFORCEMENT_BOOST_PER_HIT = 0.1
MAX_REINFORCEMENT_BOOST = 0.5


class DecayEngine:
    """Computes decay weights and expiry for facts."""

    def __init__(self, config: DecayConfig | None = None) -> None:
        self.config = config or DecayConfig()

    def is_permanent(self, predicate: str) -> bool:
        return predicate.upper() in self.config.permanent_predicates

    def is_ephemeral(self, predicate: str) -> bool:
        return predicate.upper() in self.config.ephemeral_predicates

    def add_permanent_predicate(self, predicate: str) -> None:
        upper = predicate.upper()
        if upper not in self.config.permanent_predicates:
            self.config.permanent_predicates.append(upper)

    def add_ephemeral_predicate(self, predicate: str) -> None:
        upper = predicate.upper()
        if upper not in self.config.ephemeral_predicates:
            self.config.ephemeral_predicates.append(upper)

    def _is_reinforced(self, fact: Fact) -> bool:
        return fact.reinforcement_count >= self.config.reinforcement_threshold

    def _ttl(self, fact: Fact) -> timedelta | None:
        """Lifetime for a non-permanent, non-reinforced fact. None means forever."""
        if self.is_ephemeral(fact.predicate):
            return timedelta(hours=self.config.ephemeral_ttl_hours)

        if fact.confidence < self.config.low_confidence_threshold:
            return timedelta(days=self.config.low_weight_ttl_days)

        if self.config.default_ttl_days is None:
            return None
        return timedelta(days=self.config.default_ttl_days)

    def weight(self, fact: Fact, now: datetime | None = None) -> float:
        """Relevance of a fact in [0, 1]; 0 means it should be forgotten."""
        if not self.config.enabled:
            return 1.0
        if self.is_permanent(fact.predicate) or self._is_reinforced(fact):
            return 1.0

        ttl = self._ttl(fact)
        if ttl is None:
            return 1.0

        now = now or utcnow()
        age = now - fact.last_reinforced_at
        # A future timestamp gives a negative age
        weight = max(0.0, min(1.0, 1.0 - age / ttl))

        if self.is_ephemeral(fact.predicate):
            return weight

        boost = min(
            MAX_REINFORCEMENT_BOOST,
            fact.reinforcement_count * REINFORCEMENT_BOOST_PER_HIT,
        )
        return min(1.0, weight + boost)

    def expiry(self, fact: Fact) -> datetime | None:
        """When the fact expires, or None if it never does."""
        if not self.config.enabled:
            return None
        if self.is_permanent(fact.predicate) or self._is_reinforced(fact):
            return None

        ttl = self._ttl(fact)
        if ttl is None:
            return None
        return fact.last_reinforced_at + ttl

    def should_prune(self, fact: Fact, now: datetime | None = None) -> bool:
        """Whether a fact has decayed away.

        Permanent and safety-critical facts are never prunable.
        """
        if not self.config.enabled:
            return False
        if fact.is_critical or self.is_permanent(fact.predicate):
            return False

        now = now or utcnow()
        if self.weight(fact, now) <= 0:
            return True

        expires_at = self.expiry(fact)
        return expires_at is not None and expires_at <= now

    def filter_by_weight(
        self,
        facts: list[Fact],
        min_weight: float | None = None,
        now: datetime | None = None,
    ) -> list[Fact]:
        """Keep facts at or above min_weight. Critical facts are always kept."""
        threshold = self.config.min_weight if min_weight is None else min_weight
        now = now or utcnow()
        return [
            f for f in facts if f.is_critical or self.weight(f, now) >= threshold
        ]

    def facts_to_prune(
        self, facts: list[Fact], now: datetime | None = None
    ) -> list[Fact]:
        now = now or utcnow()
        return [f for f in facts if f.is_valid and self.should_prune(f, now)]

    async def apply_pruning(
        self,
        store: FactStore,
        principal: str,
        now: datetime | None = None,
        audit: JSONLLogger | None = None,
    ) -> list[Fact]:
        """Soft-delete every valid fact of a principal that has decayed.

        Returns:
            The facts that were invalidated.
        """
        facts = await store.get_facts(principal)
        pruned = []
        for fact in self.facts_to_prune(facts, now):
            if await store.delete_fact(principal, fact.id, PRUNE_REASON):
                pruned.append(fact)
                if audit is not None:
                    audit.log_pruned(principal, fact.id, PRUNE_REASON)

        if pruned:
            logger.info("Pruned %d decayed facts for %s", len(pruned), principal)
        return pruned
