"""Write-time conflict resolution for proposed operations."""

import logging
from dataclasses import replace
from typing import NamedTuple

from ..config import CONFLICT_STRATEGIES, DEFAULT_MULTI_VALUED_PREDICATES
from .models import Fact, Operation, OpKind, ResolutionKind, ResolutionRecord

logger = logging.getLogger(__name__)


class Resolution(NamedTuple):
    """Operations to apply, in order, and the conflicts settled on the way."""

    operations: list[Operation]
    records: list[ResolutionRecord]


class ConflictResolver:
    """Decides which proposed operations to apply against the current valid facts.

    For a single-valued predicate at most one fact per (subject, predicate)
    stays valid: a differing value emits a DELETE of the old fact ahead of
    the INSERT. Multi-valued predicates always keep both values; a configured
    ``keep_both`` strategy is only honoured for them.
    """

    def __init__(
        self,
        strategy: str = "latest",
        multi_valued_predicates: list[str] | None = None,
    ) -> None:
        if strategy not in CONFLICT_STRATEGIES:
            raise ValueError(f"Unknown conflict strategy: {strategy}")
        self.strategy = strategy
        if multi_valued_predicates is None:
            multi_valued_predicates = list(DEFAULT_MULTI_VALUED_PREDICATES)
        self.multi_valued_predicates = {p.upper() for p in multi_valued_predicates}

    def is_multi_valued(self, predicate: str) -> bool:
        return predicate.upper() in self.multi_valued_predicates

    def strategy_for(self, predicate: str) -> str:
        """Strategy applied to a conflict on this predicate."""
        if self.is_multi_valued(predicate):
            return "keep_both"
        if self.strategy == "keep_both":
            logger.debug("keep_both downgraded to latest for %s", predicate)
            return "latest"
        return self.strategy

    def resolve(
        self,
        principal: str,
        operations: list[Operation],
        current_facts: list[Fact],
    ) -> Resolution:
        """Resolve a batch of operations.

        Args:
            principal: Owner of the facts, used for logging.
            operations: Validated operations in the order proposed.
            current_facts: The principal's currently valid facts.

        Returns:
            Operations to apply in order (every implicit DELETE precedes
            its INSERT) and one record per conflict.
        """
        # Working view, updated as the batch is walked so later operations
        # see the effect of earlier ones.
        view: dict[tuple[str, str], list[Fact]] = {}
        for fact in current_facts:
            if fact.is_valid:
                view.setdefault((fact.subject, fact.predicate), []).append(fact)

        resolved: list[Operation] = []
        records: list[ResolutionRecord] = []

        for op in operations:
            key = (op.subject, op.predicate)

            if op.op is OpKind.DELETE:
                resolved.append(op)
                view[key] = [f for f in view.get(key, []) if f.object != op.object]
                continue

            if op.op not in (OpKind.INSERT, OpKind.UPDATE):
                raise ValueError(f"Unhandled operation kind: {op.op}")

            existing = view.get(key, [])
            pending = Fact(
                subject=op.subject,
                predicate=op.predicate,
                object=op.object,
                confidence=op.confidence if op.confidence is not None else 0.8,
            )

            if not existing:
                resolved.append(replace(op, op=OpKind.INSERT))
                view[key] = [pending]
                continue

            same = next((f for f in existing if f.object == op.object), None)
            if same is not None:
                records.append(ResolutionRecord(same, op, ResolutionKind.IGNORE))
                continue

            strategy = self.strategy_for(op.predicate)
            if strategy == "keep_both":
                records.append(ResolutionRecord(existing[0], op, ResolutionKind.KEEP_BOTH))
                resolved.append(op)
                view[key] = existing + [pending]
                continue

            if strategy == "merge":
                kind, reason = ResolutionKind.MERGE, f"Merged with new value: {op.object}"
            else:
                kind, reason = ResolutionKind.REPLACE, f"Replaced by new value: {op.object}"

            for old in existing:
                records.append(ResolutionRecord(old, op, kind))
                resolved.append(Operation.delete(old, reason))
            resolved.append(op)
            view[key] = [pending]

        if records:
            logger.debug(
                "Resolved %d conflicts for %s (%d operations to apply)",
                len(records),
                principal,
                len(resolved),
            )
        return Resolution(resolved, records)
