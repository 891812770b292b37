"""Conversation store interface."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol, runtime_checkable

from ..models import Chapter, MemoryRecord, Message, Role


@runtime_checkable
class ConversationStore(Protocol):
    """Persistence for messages, chapters and long-term memories.

    Ids are integers assigned by the store. Listing queries return oldest
    first unless ``newest_first`` is set.
    """

    async def create_message(
        self,
        role: Role | str,
        content: str,
        created_at: datetime | None = None,
        chapter_id: int | None = None,
    ) -> Message:
        ...

    async def get_message(self, message_id: int) -> Message | None:
        ...

    async def list_messages(
        self,
        chapter_id: int | None = None,
        roles: Iterable[Role | str] | None = None,
        after_id: int | None = None,
        before_id: int | None = None,
        after: datetime | None = None,
        before: datetime | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> list[Message]:
        ...

    async def get_open_chapter(self) -> Chapter | None:
        ...

    async def create_chapter(
        self,
        title: str,
        summary: str,
        start_message_id: int | None = None,
        keywords: list[str] | None = None,
    ) -> Chapter:
        """Open a new chapter.

        Raises:
            StorageError: If a chapter is already open.
        """
        ...

    async def set_chapter_centroid(self, chapter_id: int, centroid: list[float]) -> bool:
        """Store a chapter's centroid once; False if it was already set."""
        ...

    async def close_chapter(
        self,
        chapter_id: int,
        expected_version: int,
        title: str,
        summary: str,
        keywords: list[str],
        end_message_id: int,
    ) -> bool:
        """Close an open chapter if its version still matches; False otherwise."""
        ...

    async def list_closed_chapters(self, limit: int = 10) -> list[Chapter]:
        ...

    async def create_memory(
        self,
        content: str,
        importance: float,
        source_key: str | None = None,
        source_message_id: int | None = None,
        privacy: str = "private",
    ) -> MemoryRecord:
        """Persist a memory; returns the existing record for a known ``source_key``."""
        ...

    async def list_memories(self, limit: int | None = None) -> list[MemoryRecord]:
        ...
