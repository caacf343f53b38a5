"""Per-principal runtime state and concurrency control."""

import asyncio
import time
from dataclasses import dataclass, field


@dataclass
class PrincipalState:
    """In-process state for a single principal."""

    principal: str
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    session_id: str | None = None
    message_count: int = 0

    def touch(self) -> None:
        """Update last activity timestamp."""
        self.last_activity = time.time()

    def is_expired(self, ttl_seconds: float) -> bool:
        """Check if state has expired based on TTL."""
        return (time.time() - self.last_activity) > ttl_seconds


class PrincipalRegistry:
    """Holds per-principal locks, active session ids and message counters.

    State is created on first use and dropped by ``end``. Components that
    read-then-write a principal's facts share one registry so their writes
    for the same principal are serialized.
    """

    def __init__(self) -> None:
        self._states: dict[str, PrincipalState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get_state(self, principal: str) -> PrincipalState:
        """Get or create the state for a principal."""
        if principal not in self._states:
            self._states[principal] = PrincipalState(principal=principal)
        return self._states[principal]

    def get_lock(self, principal: str) -> asyncio.Lock:
        """Get the lock for a principal."""
        if principal not in self._locks:
            self._locks[principal] = asyncio.Lock()
        return self._locks[principal]

    def active_session(self, principal: str) -> str | None:
        state = self._states.get(principal)
        return state.session_id if state else None

    def set_session(self, principal: str, session_id: str) -> None:
        state = self.get_state(principal)
        state.session_id = session_id
        state.message_count = 0
        state.touch()

    def count_message(self, principal: str) -> int:
        """Record one digested exchange. Returns the new count."""
        state = self.get_state(principal)
        state.message_count += 1
        state.touch()
        return state.message_count

    def end(self, principal: str) -> PrincipalState | None:
        """Drop a principal's state. The lock is kept if someone holds it."""
        state = self._states.pop(principal, None)
        lock = self._locks.get(principal)
        if lock is not None and not lock.locked():
            del self._locks[principal]
        return state

    def expired(self, ttl_seconds: float) -> list[str]:
        """Principals idle for longer than ttl_seconds."""
        return [p for p, s in self._states.items() if s.is_expired(ttl_seconds)]

    def __contains__(self, principal: str) -> bool:
        return principal in self._states
