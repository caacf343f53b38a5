"""Fact storage backends."""

from .base import FactStore
from .memory import InMemoryFactStore
from .sqlite import SQLiteFactStore
from .tiered import TieredStore

__all__ = [
    "FactStore",
    "InMemoryFactStore",
    "SQLiteFactStore",
    "TieredStore",
]
