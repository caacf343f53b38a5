"""Fact consistency and tiering engine for conversational agent memory."""

from .memory.manager import MemoryManager

__all__ = ["MemoryManager"]
