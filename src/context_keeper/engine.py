"""ContextEngine - facade over segmentation, retention and packing.

Consuming applications record messages as they arrive and call ``assemble``
when a prompt is needed. Everything else (chapter closure, archival,
trimming, budgeting) happens behind these calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from loguru import logger

from .budgeter import Budgeter, PackResult
from .chapters import ChapterSegmenter, OpenChapterCache
from .config import ContextKeeperConfig
from .embedding import EmbeddingCache, EmbeddingProvider, EmbeddingService, OpenAIEmbeddingProvider
from .importance import ImportanceScorer
from .llm import InferenceClient, OpenAICompatibleClient
from .models import BoundaryCheck, ContextComponent, MemorySnippet, Message, Role, TruncationResult
from .retention import RetentionPlanner
from .similarity import cosine_similarity, diversity_select
from .storage import InMemoryStore, SQLiteStore
from .storage.base import ConversationStore
from .token_counter import TokenCounter

PERSONA_PRIORITY = 100
CHAPTERS_PRIORITY = 80
MEMORIES_PRIORITY = 60
TRANSCRIPT_PRIORITY = 40


@dataclass
class AssembledContext:
    """Packed prompt blocks plus the decisions that produced them."""

    blocks: list[str]
    retention: TruncationResult
    pack: PackResult = field(default_factory=PackResult)


class ContextEngine:
    """Main entry point wiring the context components together."""

    def __init__(
        self,
        store: ConversationStore,
        segmenter: ChapterSegmenter,
        planner: RetentionPlanner,
        budgeter: Budgeter,
        embeddings: EmbeddingService | None = None,
        config: ContextKeeperConfig | None = None,
    ):
        self.config = config or ContextKeeperConfig()
        self.store = store
        self.segmenter = segmenter
        self.planner = planner
        self.budgeter = budgeter
        self.embeddings = embeddings
        self.last_boundary: BoundaryCheck | None = None

    @classmethod
    def from_config(
        cls,
        config: ContextKeeperConfig | None = None,
        store: ConversationStore | None = None,
        inference: InferenceClient | None = None,
        embedding_provider: EmbeddingProvider | None = None,
    ) -> "ContextEngine":
        """Build the component graph from configuration.

        OpenAI-compatible clients are created for inference and embeddings
        when an API key is configured and no client is passed in.
        """
        config = config or ContextKeeperConfig()

        if store is None:
            if config.storage.backend == "sqlite":
                store = SQLiteStore(config.storage.sqlite_db_path)
            else:
                store = InMemoryStore()

        if inference is None and config.inference.api_key:
            inference = OpenAICompatibleClient(config.inference)
        if embedding_provider is None and config.embedding.api_key:
            embedding_provider = OpenAIEmbeddingProvider(config.embedding)

        embeddings = None
        if embedding_provider is not None:
            embeddings = EmbeddingService(
                embedding_provider,
                EmbeddingCache(config.embedding.cache_size),
                config.embedding,
            )
        else:
            logger.warning("No embedding provider configured, topic drift detection disabled")

        counter = TokenCounter(config.tokens.per_message_overhead, config.tokens.ellipsis)
        timeout = config.inference.timeout_seconds
        scorer = ImportanceScorer(inference, config.scoring, timeout=timeout)
        planner = RetentionPlanner(
            scorer,
            store=store,
            config=config.retention,
            scoring=config.scoring,
            inference=inference,
            timeout=timeout,
            counter=counter,
        )
        segmenter = ChapterSegmenter(
            store,
            embeddings=embeddings,
            inference=inference,
            config=config.chapters,
            cache=OpenChapterCache(config.chapters.cache_ttl_seconds),
            inference_timeout=timeout,
        )
        budgeter = Budgeter(config.budget, counter)

        logger.info(
            f"ContextEngine initialized: storage={config.storage.backend}, "
            f"inference={'on' if inference else 'off'}, "
            f"embeddings={'on' if embeddings else 'off'}"
        )
        return cls(store, segmenter, planner, budgeter, embeddings, config)

    async def initialize(self) -> None:
        """Open the store if it needs it."""
        initialize = getattr(self.store, "initialize", None)
        if initialize is not None:
            await initialize()

    async def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()

    async def record_message(
        self,
        role: Role | str,
        content: str,
        created_at: datetime | None = None,
    ) -> Message:
        """Persist a message in the open chapter and check for a chapter boundary.

        Raises:
            ExternalServiceError: If drift detection cannot embed the chapter.
        """
        role = Role(role)
        chapter = await self.segmenter.writable_chapter()
        message = await self.store.create_message(
            role, content, created_at=created_at, chapter_id=chapter.id
        )
        if role in (Role.USER, Role.ASSISTANT):
            self.last_boundary = await self.segmenter.check_boundary(message.id)
        return message

    async def select_memories(
        self,
        query: str,
        candidates: Sequence[MemorySnippet | str],
        k: int = 5,
        lambda_: float = 0.7,
    ) -> list[MemorySnippet]:
        """Pick up to ``k`` relevant, mutually diverse memories for ``query``.

        Returns copies; the caller's snippets are left untouched.
        """
        snippets = [
            c.model_copy(deep=True) if isinstance(c, MemorySnippet) else MemorySnippet(content=c)
            for c in candidates
        ]
        snippets = [s for s in snippets if s.content.strip()]
        if not snippets or k <= 0:
            return []

        if self.embeddings is None:
            logger.warning("No embedding service, returning memories in input order")
            return snippets[:k]

        query_vector = await self.embeddings.embed(query)
        missing = [s for s in snippets if s.embedding is None]
        if missing:
            vectors = await self.embeddings.embed_batch([s.content for s in missing])
            for snippet, vector in zip(missing, vectors):
                snippet.embedding = vector

        usable = [s for s in snippets if s.embedding]
        for snippet in usable:
            snippet.score = cosine_similarity(snippet.embedding, query_vector)

        selected = diversity_select(usable, query_vector, k, lambda_, key=lambda s: s.embedding)
        logger.debug(f"Selected {len(selected)}/{len(snippets)} memories")
        return selected

    async def assemble(
        self,
        persona: str,
        history: Sequence[Message],
        memories: Sequence[MemorySnippet | str] = (),
        max_messages: int | None = None,
    ) -> AssembledContext:
        """Trim history and pack everything into the token budget.

        Args:
            persona: System/persona preamble, always retained
            history: Conversation messages, oldest first, without the persona
            memories: Retrieved memories to offer to the prompt
            max_messages: History budget; configured default if None
        """
        persona_msg = Message(role=Role.SYSTEM, content=persona)
        retention = await self.planner.plan(
            [persona_msg, *history],
            max_messages=max_messages,
            token_budget=self.budgeter.available,
        )

        components = [
            ContextComponent(name="persona", content=persona, priority=PERSONA_PRIORITY)
        ]

        chapters = await self.segmenter.chapter_history(limit=3)
        if chapters:
            lines = [f"- {c.title}: {c.summary}" for c in chapters]
            components.append(
                ContextComponent(
                    name="chapters",
                    content="Previous chapters:\n" + "\n".join(lines),
                    priority=CHAPTERS_PRIORITY,
                )
            )

        memory_lines = [
            f"- {m.content if isinstance(m, MemorySnippet) else m}" for m in memories
        ]
        if memory_lines:
            components.append(
                ContextComponent(
                    name="memories",
                    content="Relevant memories:\n" + "\n".join(memory_lines),
                    priority=MEMORIES_PRIORITY,
                )
            )

        transcript = "\n".join(f"{m.role.value}: {m.content}" for m in retention.kept[1:])
        if transcript:
            components.append(
                ContextComponent(
                    name="transcript", content=transcript, priority=TRANSCRIPT_PRIORITY
                )
            )

        pack = self.budgeter.pack_with_report(components)
        return AssembledContext(blocks=pack.contents, retention=retention, pack=pack)
