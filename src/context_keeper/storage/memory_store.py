"""In-process conversation store.

Keeps everything in dictionaries guarded by an ``asyncio.Lock``. Useful for
tests and for single-process deployments that persist elsewhere.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Iterable

from loguru import logger

from ..exceptions import StorageError
from ..models import Chapter, MemoryRecord, Message, Role


def _role_values(roles: Iterable[Role | str] | None) -> set[str] | None:
    if roles is None:
        return None
    return {Role(r).value for r in roles}


class InMemoryStore:
    """Dictionary-backed implementation of ``ConversationStore``."""

    def __init__(self) -> None:
        self._messages: dict[int, Message] = {}
        self._chapters: dict[int, Chapter] = {}
        self._memories: dict[int, MemoryRecord] = {}
        self._memory_keys: dict[str, int] = {}
        self._next_ids = {"message": 1, "chapter": 1, "memory": 1}
        self._lock = asyncio.Lock()

    def _next_id(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    async def create_message(
        self,
        role: Role | str,
        content: str,
        created_at: datetime | None = None,
        chapter_id: int | None = None,
    ) -> Message:
        async with self._lock:
            message = Message(
                id=self._next_id("message"),
                role=Role(role),
                content=content,
                created_at=created_at or datetime.now(timezone.utc),
                chapter_id=chapter_id,
            )
            self._messages[message.id] = message
            return message

    async def get_message(self, message_id: int) -> Message | None:
        return self._messages.get(message_id)

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
        wanted = _role_values(roles)
        selected = []
        for msg in self._messages.values():
            if chapter_id is not None and msg.chapter_id != chapter_id:
                continue
            if wanted is not None and msg.role.value not in wanted:
                continue
            if after_id is not None and msg.id <= after_id:
                continue
            if before_id is not None and msg.id >= before_id:
                continue
            if after is not None and msg.created_at <= after:
                continue
            if before is not None and msg.created_at >= before:
                continue
            selected.append(msg)

        selected.sort(key=lambda m: (m.created_at, m.id), reverse=newest_first)
        if limit is not None:
            selected = selected[:limit]
        return selected

    async def get_open_chapter(self) -> Chapter | None:
        open_chapters = [c for c in self._chapters.values() if c.is_open]
        if not open_chapters:
            return None
        return max(open_chapters, key=lambda c: (c.created_at, c.id)).model_copy(deep=True)

    async def create_chapter(
        self,
        title: str,
        summary: str,
        start_message_id: int | None = None,
        keywords: list[str] | None = None,
    ) -> Chapter:
        async with self._lock:
            if any(c.is_open for c in self._chapters.values()):
                raise StorageError("Cannot open a chapter while another is open")
            chapter = Chapter(
                id=self._next_id("chapter"),
                title=title,
                summary=summary,
                start_message_id=start_message_id,
                keywords=list(keywords or []),
            )
            self._chapters[chapter.id] = chapter
            logger.debug(f"Chapter created: {chapter.id}")
            return chapter.model_copy(deep=True)

    async def set_chapter_centroid(self, chapter_id: int, centroid: list[float]) -> bool:
        async with self._lock:
            chapter = self._chapters.get(chapter_id)
            if chapter is None or chapter.centroid is not None:
                return False
            chapter.centroid = list(centroid)
            return True

    async def close_chapter(
        self,
        chapter_id: int,
        expected_version: int,
        title: str,
        summary: str,
        keywords: list[str],
        end_message_id: int,
    ) -> bool:
        async with self._lock:
            chapter = self._chapters.get(chapter_id)
            if chapter is None or not chapter.is_open or chapter.version != expected_version:
                return False
            chapter.title = title
            chapter.summary = summary
            chapter.keywords = list(keywords)
            chapter.end_message_id = end_message_id
            chapter.version += 1
            return True

    async def list_closed_chapters(self, limit: int = 10) -> list[Chapter]:
        closed = [c for c in self._chapters.values() if not c.is_open]
        closed.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return [c.model_copy(deep=True) for c in closed[:limit]]

    async def create_memory(
        self,
        content: str,
        importance: float,
        source_key: str | None = None,
        source_message_id: int | None = None,
        privacy: str = "private",
    ) -> MemoryRecord:
        async with self._lock:
            if source_key is not None and source_key in self._memory_keys:
                return self._memories[self._memory_keys[source_key]]
            record = MemoryRecord(
                id=self._next_id("memory"),
                content=content,
                importance=importance,
                source_key=source_key,
                source_message_id=source_message_id,
                privacy=privacy,
            )
            self._memories[record.id] = record
            if source_key is not None:
                self._memory_keys[source_key] = record.id
            return record

    async def list_memories(self, limit: int | None = None) -> list[MemoryRecord]:
        records = sorted(self._memories.values(), key=lambda m: m.id, reverse=True)
        return records[:limit] if limit is not None else records
