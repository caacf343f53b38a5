"""Background extraction of facts from conversation exchanges.

Exchanges are queued by ``enqueue`` and processed one at a time, in order,
by a single consumer task. Each task reads the principal's facts, asks the
LLM for operations, filters and resolves them, and applies the result to
the store. A failing task is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from ..config import PipelineConfig
from ..errors import TaskError
from ..session import PrincipalRegistry
from .extractor import FactExtractor
from .models import ExtractionResult, Fact, FactFilter, MemoryStage, Operation, OpKind, utcnow
from .resolver import ConflictResolver

if TYPE_CHECKING:
    from ..logging import JSONLLogger
    from ..storage.base import FactStore

logger = logging.getLogger(__name__)


@dataclass
class ExtractionTask:
    """One exchange waiting to be processed."""

    principal: str
    session_id: str
    user_message: str
    assistant_response: str
    queued_at: datetime = field(default_factory=utcnow)


class ExtractionPipeline:
    """FIFO queue of extraction tasks with a single consumer."""

    def __init__(
        self,
        store: FactStore,
        extractor: FactExtractor,
        config: PipelineConfig | None = None,
        registry: PrincipalRegistry | None = None,
        audit: JSONLLogger | None = None,
        on_applied: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Where facts are read and written.
            extractor: Proposes operations for an exchange.
            config: Thresholds, strategy and predicate classes.
            registry: Source of per-principal locks. Share it with every other
                component that writes the same principals' facts.
            audit: Optional JSONL event logger.
            on_applied: Called with the principal after a task changed facts.
        """
        self.store = store
        self.extractor = extractor
        self.config = config or PipelineConfig()
        self.registry = registry or PrincipalRegistry()
        self.audit = audit
        self.on_applied = on_applied
        self.resolver = ConflictResolver(
            self.config.conflict_strategy, self.config.multi_valued_predicates
        )

        self._queue: deque[ExtractionTask] = deque()
        self._worker: asyncio.Task | None = None
        self._processing = False
        self._running = True
        self.processed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        """Number of queued tasks not yet started."""
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._processing

    def enqueue(
        self,
        principal: str,
        session_id: str,
        user_message: str,
        assistant_response: str,
    ) -> bool:
        """Queue an exchange for extraction without waiting for it.

        Must be called from a running event loop.

        Returns:
            False if the queue is full and the exchange was dropped.
        """
        max_size = self.config.max_queue_size
        if max_size and len(self._queue) >= max_size:
            logger.warning("Extraction queue full, dropping exchange for %s", principal)
            return False

        self._queue.append(
            ExtractionTask(principal, session_id, user_message, assistant_response)
        )
        if self._running:
            self._ensure_worker()
        return True

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._consume())

    async def _consume(self) -> None:
        self._processing = True
        try:
            while self._queue and self._running:
                task = self._queue.popleft()
                await self._run(task)
        finally:
            self._processing = False

    async def _run(self, task: ExtractionTask) -> None:
        try:
            await self.process(task)
            self.processed += 1
        except Exception as e:
            error = TaskError(task.principal, e)
            self.failed += 1
            logger.warning("%s", error)
            if self.audit is not None:
                self.audit.log_extraction_failed(task.principal, str(e))

    async def drain(self) -> None:
        """Wait until the queue is empty and no task is in flight."""
        while self._queue or self._processing:
            if self._worker is None or self._worker.done():
                if not self._running:
                    return
                self._ensure_worker()
            await asyncio.shield(self._worker)

    def start(self) -> None:
        """Resume processing, picking up anything queued while stopped."""
        self._running = True
        if self._queue:
            self._ensure_worker()

    async def stop(self, drain: bool = True) -> None:
        """Stop consuming. Queued tasks stay queued unless drained first."""
        if drain:
            await self.drain()
        self._running = False
        if self._worker is not None and not self._worker.done():
            await self._worker

    async def extract_now(
        self,
        principal: str,
        session_id: str,
        user_message: str,
        assistant_response: str,
    ) -> ExtractionResult:
        """Process one exchange inline, bypassing the queue. Errors propagate."""
        return await self.process(
            ExtractionTask(principal, session_id, user_message, assistant_response)
        )

    async def process(self, task: ExtractionTask) -> ExtractionResult:
        """Run one task under the principal's lock.

        Returns:
            The applied operations (after resolution) and the LLM's reasoning.
        """
        principal = task.principal
        async with self.registry.get_lock(principal):
            context = await self.store.get_facts(
                principal, FactFilter(limit=self.config.context_fact_limit)
            )
            extraction = await self.extractor.extract(
                context, task.user_message, task.assistant_response
            )

            confident = [
                op
                for op in extraction.operations
                if self._confidence(op) >= self.config.min_confidence
            ]
            if not confident:
                self._log_extraction(task, 0, extraction.reasoning)
                return ExtractionResult(reasoning=extraction.reasoning)

            # Resolve against every valid fact of the touched predicates, not
            # just the bounded prompt context.
            predicates = sorted({op.predicate for op in confident})
            current = await self.store.get_facts(
                principal, FactFilter(predicates=predicates)
            )
            resolution = self.resolver.resolve(principal, confident, current)

            if self.audit is not None:
                for record in resolution.records:
                    self.audit.log_resolution(principal, record)

            applied = await self._apply(principal, task.session_id, resolution.operations)

        self._log_extraction(task, applied, extraction.reasoning)
        if applied and self.on_applied is not None:
            self.on_applied(principal)

        return ExtractionResult(resolution.operations, extraction.reasoning)

    def _confidence(self, op: Operation) -> float:
        if op.confidence is None:
            return self.config.default_confidence
        return op.confidence

    async def _apply(
        self, principal: str, session_id: str, operations: list[Operation]
    ) -> int:
        """Apply resolved operations in order. Returns how many changed the store."""
        applied = 0
        for op in operations:
            if op.op is OpKind.DELETE:
                candidates = await self.store.get_facts(
                    principal, FactFilter(subject=op.subject, predicate=op.predicate)
                )
                match = next((f for f in candidates if f.object == op.object), None)
                if match is None:
                    logger.debug("Nothing to delete for %s %s", op.predicate, op.object)
                    continue
                if await self.store.delete_fact(principal, match.id, op.reason):
                    applied += 1
                continue

            fact = Fact(
                subject=op.subject,
                predicate=op.predicate,
                object=op.object,
                confidence=self._confidence(op),
                importance=(
                    op.importance
                    if op.importance is not None
                    else self.config.default_importance
                ),
                source=session_id,
                memory_stage=MemoryStage.SHORT_TERM,
                sentiment=op.sentiment,
            )
            await self.store.upsert_fact(
                principal,
                fact,
                match_object=self.resolver.is_multi_valued(op.predicate),
            )
            applied += 1

        return applied

    def _log_extraction(
        self, task: ExtractionTask, applied: int, reasoning: str | None
    ) -> None:
        logger.info(
            "Extraction for %s applied %d operations", task.principal, applied
        )
        if self.audit is not None:
            self.audit.log_extraction(
                task.principal, task.session_id, applied, reasoning=reasoning
            )
