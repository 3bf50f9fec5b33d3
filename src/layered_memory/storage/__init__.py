"""Storage backends for layered memory."""

from __future__ import annotations

from .base import MemoryStore
from .memory_store import InMemoryStore
from .sqlite_store import SQLiteStore

__all__ = ["InMemoryStore", "MemoryStore", "SQLiteStore"]
