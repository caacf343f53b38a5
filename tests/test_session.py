"""Tests for the principal registry."""

import asyncio
import time

import pytest

from cortex.session import PrincipalRegistry, PrincipalState


class TestPrincipalState:
    def test_create(self):
        state = PrincipalState(principal="u1")
        assert state.principal == "u1"
        assert state.session_id is None
        assert state.message_count == 0

    def test_touch_updates_activity(self):
        state = PrincipalState(principal="u1")
        old_time = state.last_activity
        time.sleep(0.01)
        state.touch()
        assert state.last_activity > old_time

    def test_is_expired(self):
        state = PrincipalState(principal="u1")
        state.last_activity = time.time() - 100
        assert state.is_expired(ttl_seconds=50) is True
        assert state.is_expired(ttl_seconds=200) is False


class TestPrincipalRegistry:
    def test_get_state_creates_once(self):
        registry = PrincipalRegistry()
        assert "u1" not in registry

        state = registry.get_state("u1")

        assert registry.get_state("u1") is state
        assert "u1" in registry

    def test_lock_is_per_principal(self):
        registry = PrincipalRegistry()
        assert registry.get_lock("u1") is registry.get_lock("u1")
        assert registry.get_lock("u1") is not registry.get_lock("u2")

    def test_session_and_message_count(self):
        registry = PrincipalRegistry()
        assert registry.active_session("u1") is None

        registry.set_session("u1", "s1")
        registry.count_message("u1")

        assert registry.active_session("u1") == "s1"
        assert registry.count_message("u1") == 2

        registry.set_session("u1", "s2")
        assert registry.get_state("u1").message_count == 0

    def test_end_drops_state(self):
        registry = PrincipalRegistry()
        registry.set_session("u1", "s1")
        lock = registry.get_lock("u1")

        ended = registry.end("u1")

        assert ended.session_id == "s1"
        assert "u1" not in registry
        assert registry.get_lock("u1") is not lock
        assert registry.end("missing") is None

    @pytest.mark.asyncio
    async def test_end_keeps_held_lock(self):
        registry = PrincipalRegistry()
        lock = registry.get_lock("u1")

        async with lock:
            registry.end("u1")
            assert registry.get_lock("u1") is lock

    def test_expired(self):
        registry = PrincipalRegistry()
        registry.get_state("idle").last_activity = time.time() - 100
        registry.get_state("busy")

        assert registry.expired(ttl_seconds=50) == ["idle"]

    @pytest.mark.asyncio
    async def test_lock_serializes_same_principal(self):
        registry = PrincipalRegistry()
        order: list[str] = []

        async def work(name: str):
            async with registry.get_lock("u1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(work("a"), work("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]
