"""Similarity-keyed cache of compiled hydration results.

Queries that are worded almost the same way ("What is my name?" and
"what is my name") return the same compiled context. Similarity is the
Jaccard index over whitespace tokens of the normalized query.

Callers must invalidate a principal whenever its facts change.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from ..config import CacheConfig
from .models import HydratedContext

logger = logging.getLogger(__name__)


def normalize_query(query: str) -> str:
    return query.lower().strip()


def jaccard_similarity(a: str, b: str) -> float:
    """Token-set Jaccard similarity of two normalized strings."""
    if a == b:
        return 1.0

    tokens_a = set(a.split())
    tokens_b = set(b.split())
    if not tokens_a or not tokens_b:
        return 0.0

    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


@dataclass
class CacheEntry:
    """One cached result."""

    query: str
    result: Any
    timestamp: float = field(default_factory=time.monotonic)
    hit_count: int = 0

    def age_ms(self, now: float) -> float:
        return (now - self.timestamp) * 1000


class QueryCache:
    """Per-principal bounded cache with fuzzy query matching.

    Safe to share between threads; one lock guards all principals since
    each principal holds at most ``max_size`` entries.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: dict[str, list[CacheEntry]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return entry.age_ms(now) > self.config.ttl_ms

    def get(self, principal: str, query: str) -> Any | None:
        """Look up the best matching entry for a query.

        Returns:
            The cached result, or None on a miss. A HydratedContext is
            returned as a copy flagged ``from_cache``.
        """
        if not self.config.enabled:
            return None

        normalized = normalize_query(query)
        now = self._clock()

        with self._lock:
            best: CacheEntry | None = None
            best_score = 0.0
            for entry in self._entries.get(principal, []):
                if self._expired(entry, now):
                    continue
                score = jaccard_similarity(normalized, entry.query)
                if score < self.config.similarity_threshold:
                    continue
                # Strict comparison keeps the first entry on ties
                if best is None or score > best_score:
                    best, best_score = entry, score

            if best is None:
                self._misses += 1
                return None

            best.hit_count += 1
            self._hits += 1
            result = best.result

        logger.debug("Cache hit for %s (similarity %.2f)", principal, best_score)
        if isinstance(result, HydratedContext):
            return replace(result, facts=list(result.facts), from_cache=True)
        return result

    def set(self, principal: str, query: str, result: Any) -> None:
        """Store a result, evicting the least used entry when full."""
        if not self.config.enabled:
            return

        now = self._clock()
        with self._lock:
            entries = [
                e for e in self._entries.get(principal, []) if not self._expired(e, now)
            ]

            if len(entries) >= self.config.max_size:
                worst = min(entries, key=lambda e: (e.hit_count, e.timestamp))
                entries.remove(worst)
                self._evictions += 1

            entries.append(
                CacheEntry(query=normalize_query(query), result=result, timestamp=now)
            )
            self._entries[principal] = entries

    def invalidate(self, principal: str) -> None:
        """Drop every entry of one principal."""
        with self._lock:
            self._entries.pop(principal, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self, principal: str | None = None) -> int:
        with self._lock:
            if principal is not None:
                return len(self._entries.get(principal, []))
            return sum(len(e) for e in self._entries.values())

    def stats(self) -> dict[str, float]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "entries": sum(len(e) for e in self._entries.values()),
                "hit_rate": self._hits / lookups if lookups else 0.0,
            }
