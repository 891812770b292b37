"""Storage backends.

The conversation store is an external collaborator; these adapters provide
an in-process implementation and an aiosqlite-backed one.
"""

from __future__ import annotations

from .base import ConversationStore
from .memory_store import InMemoryStore
from .sqlite_store import SQLiteStore

__all__ = ["ConversationStore", "InMemoryStore", "SQLiteStore"]
