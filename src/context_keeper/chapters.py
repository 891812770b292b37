"""Chapter segmentation.

Splits the conversation into topical chapters. A chapter closes after an idle
gap, at a message cap, or when the newest message drifts away from the
chapter's topic centroid. Closure is serialized by a lock and guarded by a
version compare-and-swap in the store, so concurrent checks close a chapter
at most once.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

from loguru import logger

from .config import ChapterConfig
from .embedding import EmbeddingService
from .exceptions import ExternalServiceError, MalformedResponseError, StorageError
from .llm import InferenceClient, request_json
from .models import BoundaryCheck, Chapter, ChapterSummary, Message, Role
from .similarity import centroid, cosine_similarity
from .storage.base import ConversationStore

CHAPTER_SUMMARY_PROMPT = """\
You are summarizing a conversation chapter between a user and an AI companion.

Task: Generate a concise title and summary for this chapter.

The summary should include:
- 5-8 key points or topics discussed
- Any decisions, commitments, or plans made
- Emotional beats or relationship moments
- References to any memory IDs mentioned

Format your response as JSON:
{{
  "title": "Brief descriptive title (4-8 words)",
  "summary": "Comprehensive summary in 150-300 words",
  "keywords": ["keyword1", "keyword2", "keyword3"]
}}

Messages:
{messages}
"""

FIRST_CHAPTER = ChapterSummary(
    title="Getting to Know Each Other",
    summary="The beginning of our conversation.",
    keywords=["introduction", "first meeting"],
    placeholder=True,
)
NEW_CHAPTER = ChapterSummary(title="New Conversation", summary="Just started...", placeholder=True)
FALLBACK_SUMMARY = ChapterSummary(
    title="Conversation", summary="A meaningful exchange.", placeholder=True
)

CONVERSATION_ROLES = (Role.USER, Role.ASSISTANT)


class OpenChapterCache:
    """Short-lived cache of the open chapter for read paths.

    Boundary checks never read from it.
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._chapter: Chapter | None = None
        self._stored_at = 0.0

    def get(self) -> Chapter | None:
        if self._chapter is None:
            return None
        if self._clock() - self._stored_at >= self._ttl:
            return None
        return self._chapter.model_copy(deep=True)

    def set(self, chapter: Chapter) -> None:
        self._chapter = chapter.model_copy(deep=True)
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._chapter = None


def sample_messages(messages: list[Message], sample_size: int) -> list[Message]:
    """Evenly strided sample of at most ``sample_size`` messages."""
    if not messages or sample_size <= 0:
        return []
    size = min(sample_size, len(messages))
    step = max(1, len(messages) // size)
    return messages[::step][:size]


class ChapterSegmenter:
    """Tracks the open chapter and decides when to close it."""

    def __init__(
        self,
        store: ConversationStore,
        embeddings: EmbeddingService | None = None,
        inference: InferenceClient | None = None,
        config: ChapterConfig | None = None,
        cache: OpenChapterCache | None = None,
        inference_timeout: float = 20.0,
    ):
        """Initialize chapter segmenter.

        Args:
            store: Conversation store holding messages and chapters
            embeddings: Embedding service for drift detection; drift is not
                checked without one
            inference: Client for chapter summaries; placeholders without one
            config: Segmentation thresholds
            cache: Open-chapter read cache
            inference_timeout: Seconds allowed for a summary request
        """
        self._store = store
        self._embeddings = embeddings
        self._inference = inference
        self._config = config or ChapterConfig()
        self._cache = cache or OpenChapterCache(self._config.cache_ttl_seconds)
        self._inference_timeout = inference_timeout
        self._lock = asyncio.Lock()

    async def _open_chapter(
        self, placeholder: ChapterSummary, start_message_id: int | None
    ) -> Chapter:
        """Create the open chapter, adopting one another writer opened first."""
        try:
            return await self._store.create_chapter(
                title=placeholder.title,
                summary=placeholder.summary,
                start_message_id=start_message_id,
                keywords=list(placeholder.keywords),
            )
        except StorageError:
            existing = await self._store.get_open_chapter()
            if existing is None:
                raise
            logger.debug(f"Chapter #{existing.id} was opened concurrently, adopting it")
            return existing

    async def _load_open_chapter(self) -> Chapter:
        chapter = await self._store.get_open_chapter()
        if chapter is None:
            chapter = await self._open_chapter(FIRST_CHAPTER, None)
            logger.info(f"Opened first chapter #{chapter.id}")
        self._cache.set(chapter)
        return chapter

    async def current_chapter(self) -> Chapter:
        """Return the open chapter, creating the first one if none exists."""
        cached = self._cache.get()
        if cached is not None:
            return cached
        async with self._lock:
            return await self._load_open_chapter()

    async def writable_chapter(self) -> Chapter:
        """Open chapter read from the store, for attaching new messages.

        Unlike ``current_chapter`` this never serves a cached chapter that
        another writer may already have closed.
        """
        async with self._lock:
            return await self._load_open_chapter()

    async def chapter_history(self, limit: int = 10) -> list[Chapter]:
        """Closed chapters, newest first."""
        return await self._store.list_closed_chapters(limit=limit)

    async def check_boundary(self, latest_message_id: int) -> BoundaryCheck:
        """Close the open chapter if a boundary condition holds.

        Raises:
            ExternalServiceError: If embedding the chapter's messages fails.
        """
        async with self._lock:
            chapter = await self._load_open_chapter()
            messages = await self._store.list_messages(
                chapter_id=chapter.id, roles=CONVERSATION_ROLES
            )
            if not messages:
                return BoundaryCheck()

            check = BoundaryCheck(message_count=len(messages))
            cfg = self._config

            if len(messages) >= 2:
                gap = messages[-1].created_at - messages[-2].created_at
                if gap.total_seconds() > cfg.idle_gap_hours * 3600:
                    check.reason = "idle_gap"

            if check.reason is None and len(messages) >= cfg.max_messages:
                check.reason = "message_cap"

            if check.reason is None and len(messages) >= cfg.drift_min_messages:
                check.similarity = await self._topic_similarity(chapter, messages)
                if check.similarity is not None and check.similarity < cfg.drift_threshold:
                    check.reason = "topic_drift"

            if check.reason is None:
                return check

            logger.info(
                f"Closing chapter #{chapter.id} ({check.reason}, {len(messages)} messages)"
            )
            return await self._close(chapter, messages, latest_message_id, check)

    async def _topic_similarity(self, chapter: Chapter, messages: list[Message]) -> float | None:
        if self._embeddings is None:
            return None

        topic = chapter.centroid
        if topic is None:
            window = messages[-self._config.centroid_window:]
            vectors = await self._embeddings.embed_batch([m.content for m in window])
            vectors = [v for v in vectors if v is not None]
            if not vectors:
                return None
            topic = centroid(vectors)
            if not await self._store.set_chapter_centroid(chapter.id, topic):
                # Someone else set it first; theirs stands
                stored = await self._store.get_open_chapter()
                if stored is not None and stored.id == chapter.id and stored.centroid:
                    topic = stored.centroid
            logger.debug(f"Chapter #{chapter.id} centroid computed from {len(vectors)} messages")

        latest = messages[-1].content
        if not latest.strip():
            return None
        vector = await self._embeddings.embed(latest)
        similarity = cosine_similarity(vector, topic)
        logger.debug(f"Chapter #{chapter.id} topic similarity: {similarity:.3f}")
        return similarity

    async def summarize(self, messages: list[Message]) -> ChapterSummary:
        """Title, summary and keywords for a chapter; placeholders on any failure."""
        if self._inference is None:
            logger.warning("No inference client, using placeholder chapter summary")
            return FALLBACK_SUMMARY.model_copy(deep=True)

        limit = self._config.summary_snippet_chars
        sample = sample_messages(messages, self._config.summary_sample_size)
        transcript = "\n\n".join(f"{m.role.value}: {m.content[:limit]}" for m in sample)
        prompt = CHAPTER_SUMMARY_PROMPT.format(messages=transcript)

        try:
            data = await request_json(self._inference, prompt, self._inference_timeout)
        except (ExternalServiceError, MalformedResponseError) as e:
            logger.warning(f"Chapter summary unavailable, using placeholder: {e}")
            return FALLBACK_SUMMARY.model_copy(deep=True)

        title = data.get("title")
        summary = data.get("summary")
        keywords = data.get("keywords")
        return ChapterSummary(
            title=title if isinstance(title, str) and title else FALLBACK_SUMMARY.title,
            summary=summary if isinstance(summary, str) and summary else FALLBACK_SUMMARY.summary,
            keywords=[str(k) for k in keywords] if isinstance(keywords, list) else [],
        )

    async def _close(
        self,
        chapter: Chapter,
        messages: list[Message],
        latest_message_id: int,
        check: BoundaryCheck,
    ) -> BoundaryCheck:
        summary = await self.summarize(messages)

        closed = await self._store.close_chapter(
            chapter_id=chapter.id,
            expected_version=chapter.version,
            title=summary.title,
            summary=summary.summary,
            keywords=summary.keywords,
            end_message_id=latest_message_id,
        )
        if not closed:
            logger.warning(f"Chapter #{chapter.id} was closed concurrently, skipping")
            self._cache.invalidate()
            return check

        successor = await self._open_chapter(NEW_CHAPTER, latest_message_id + 1)
        self._cache.set(successor)

        check.closed = True
        check.closed_chapter = chapter.model_copy(
            update={
                "title": summary.title,
                "summary": summary.summary,
                "keywords": summary.keywords,
                "end_message_id": latest_message_id,
                "version": chapter.version + 1,
            }
        )
        check.new_chapter = successor
        logger.info(f'New chapter started: "{summary.title}" -> "{successor.title}"')
        return check
