"""Retention planning ("smart truncation").

When a conversation outgrows its message budget, the planner keeps the most
recent messages plus the highest scoring earlier ones, archiving valuable
exchanges to long-term memory before they drop out of the window.
"""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from .config import RetentionConfig, ScoringConfig
from .exceptions import ExternalServiceError
from .importance import ImportanceScorer
from .llm import InferenceClient, complete_with_timeout
from .models import (
    Message,
    Role,
    ScoredMessage,
    ScoreSource,
    TruncationResult,
    TruncationStats,
)
from .storage.base import ConversationStore
from .token_counter import TokenCounter

COMPRESSION_PROMPT = """\
Compress this message to 50% length while preserving ALL key information:

"{content}"

Rules:
- Keep all facts, names, numbers, dates
- Preserve emotional tone
- Remove filler words and redundancy
- Maintain readability
- Return ONLY the compressed version
"""


class RetentionPlanner:
    """Decides which messages survive when a conversation exceeds its budget."""

    def __init__(
        self,
        scorer: ImportanceScorer,
        store: ConversationStore | None = None,
        config: RetentionConfig | None = None,
        scoring: ScoringConfig | None = None,
        inference: InferenceClient | None = None,
        timeout: float = 20.0,
        counter: TokenCounter | None = None,
    ):
        """Initialize retention planner.

        Args:
            scorer: Rates user/assistant exchanges
            store: Where archived exchanges are written; archival is skipped if None
            config: Retention thresholds
            scoring: Scoring thresholds used for stats and unpaired messages
            inference: Client used by ``compress``
            timeout: Seconds allowed for a compression request
            counter: Token estimator for ``tokens_saved``
        """
        self._scorer = scorer
        self._store = store
        self._config = config or RetentionConfig()
        self._scoring = scoring or ScoringConfig()
        self._inference = inference
        self._timeout = timeout
        self._counter = counter or TokenCounter()

    async def score_messages(
        self, messages: Sequence[Message]
    ) -> tuple[list[ScoredMessage], bool]:
        """Score every message, pairing each user turn with the reply that follows.

        Returns:
            Scored messages in input order, and whether any exchange fell back
            to the heuristic path.
        """
        scored: list[ScoredMessage] = []
        degraded = False
        i = 0
        while i < len(messages):
            current = messages[i]
            following = messages[i + 1] if i + 1 < len(messages) else None
            if (
                current.role == Role.USER
                and following is not None
                and following.role == Role.ASSISTANT
            ):
                result = await self._scorer.score(current.content, following.content)
                if result.source == ScoreSource.HEURISTIC:
                    degraded = True
                for offset, msg in enumerate((current, following)):
                    scored.append(
                        ScoredMessage(
                            message=msg,
                            score=result.importance,
                            rationale=result.rationale,
                            should_preserve=result.should_preserve,
                            index=i + offset,
                            source=result.source,
                        )
                    )
                i += 2
                continue

            # Unpaired turns carry no exchange to rate
            base = self._scoring.heuristic_base
            scored.append(
                ScoredMessage(
                    message=current,
                    score=base,
                    rationale="Unpaired message",
                    should_preserve=base >= self._scoring.preserve_threshold,
                    index=i,
                    source=ScoreSource.HEURISTIC,
                )
            )
            i += 1

        return scored, degraded

    def _effective_scores(self, scored: list[ScoredMessage]) -> list[float]:
        sources = {sm.source for sm in scored}
        if len(sources) < 2:
            return [sm.score for sm in scored]
        weight = self._config.heuristic_weight
        return [
            sm.score * weight if sm.source == ScoreSource.HEURISTIC else sm.score
            for sm in scored
        ]

    async def archive(self, scored: list[ScoredMessage]) -> list[int]:
        """Persist high-value exchanges as memories.

        Writes are keyed by the pair's message ids so a retried plan does not
        duplicate them.

        Returns:
            Ids of the memories written (or already present).
        """
        if self._store is None:
            return []

        memory_ids: list[int] = []
        for first, second in zip(scored, scored[1:]):
            if first.message.role != Role.USER or second.message.role != Role.ASSISTANT:
                continue
            if first.index + 1 != second.index:
                continue
            if first.score < self._config.archive_threshold:
                continue
            user_id, assistant_id = first.message.id, second.message.id
            if user_id is None or assistant_id is None:
                continue

            content = f"User: {first.message.content}\nAssistant: {second.message.content}"
            try:
                record = await self._store.create_memory(
                    content=content,
                    importance=first.score,
                    source_key=f"pair:{user_id}:{assistant_id}",
                    source_message_id=user_id,
                    privacy="private",
                )
            except Exception as e:
                logger.error(f"Failed to archive message pair #{user_id}: {e}")
                continue
            memory_ids.append(record.id)
            logger.debug(f"Archived message pair #{user_id} (score: {first.score:.2f})")

        logger.info(f"Archived {len(memory_ids)} exchanges before truncation")
        return memory_ids

    async def plan(
        self,
        messages: Sequence[Message],
        max_messages: int | None = None,
        token_budget: int | None = None,
    ) -> TruncationResult:
        """Choose the messages to keep.

        ``messages[0]`` is the system message and is always kept outside the
        count. The rest is cut down to ``max_messages``: the most recent share
        by ``recent_fraction`` plus the top scoring earlier messages.

        Args:
            messages: Full conversation, system message first
            max_messages: Budget for non-system messages; config default if None
            token_budget: When given, ``tokens_saved`` reports the estimated saving

        Returns:
            TruncationResult: Kept messages in original order plus bookkeeping
        """
        if not messages:
            return TruncationResult(kept=[])

        if max_messages is None:
            max_messages = self._config.max_messages
        if max_messages < 0:
            raise ValueError(f"max_messages must be non-negative, got {max_messages}")

        system_msg = messages[0]
        conversation = list(messages[1:])

        if len(conversation) <= max_messages:
            return TruncationResult(
                kept=list(messages),
                removed_count=0,
                preserved_count=len(messages),
            )

        logger.info(
            f"Planning retention: {len(conversation)} messages, target {max_messages}"
        )

        scored, degraded = await self.score_messages(conversation)
        if degraded:
            logger.warning("Some exchanges were scored heuristically")

        archived_ids = await self.archive(scored)

        recent_count = int(max_messages * self._config.recent_fraction)
        important_count = max_messages - recent_count

        split = len(scored) - recent_count
        effective = self._effective_scores(scored)
        earlier = list(range(split))
        # Stable sort keeps original order among equal scores
        earlier.sort(key=lambda pos: effective[pos], reverse=True)
        chosen = set(earlier[:important_count]) | set(range(split, len(scored)))

        preserved = [scored[pos] for pos in sorted(chosen, key=lambda p: scored[p].index)]
        kept = [system_msg] + [sm.message for sm in preserved]

        tokens_saved = 0
        if token_budget is not None:
            tokens_saved = self._counter.count_messages(messages) - self._counter.count_messages(kept)

        result = TruncationResult(
            kept=kept,
            removed_count=len(messages) - len(kept),
            preserved_count=len(kept),
            archived_count=len(archived_ids),
            archived_memory_ids=archived_ids,
            tokens_saved=tokens_saved,
            strategy_label=f"hybrid_{recent_count}recent_{important_count}important",
            scored=scored,
            degraded=degraded,
        )
        logger.info(
            f"Retention complete: removed {result.removed_count}, "
            f"kept {result.preserved_count} ({result.strategy_label})"
        )
        return result

    async def stats(self, messages: Sequence[Message]) -> TruncationStats:
        """Importance distribution over a conversation, system message excluded."""
        scored, _ = await self.score_messages(list(messages[1:]))
        threshold = self._scoring.preserve_threshold
        high = sum(1 for sm in scored if sm.score >= threshold)
        low = sum(1 for sm in scored if sm.score < 0.4)
        average = sum(sm.score for sm in scored) / len(scored) if scored else 0.0
        return TruncationStats(
            total_messages=len(messages),
            total_tokens=sum(self._counter.count(m.content) for m in messages),
            average_score=round(average, 3),
            high_value_messages=high,
            medium_value_messages=len(scored) - high - low,
            low_value_messages=low,
        )

    async def compress(self, message: Message) -> Message:
        """Ask the inference service to halve a long message.

        Short messages, a missing client and any service failure all return
        the original message.
        """
        if len(message.content) < self._config.compress_min_chars or self._inference is None:
            return message

        prompt = COMPRESSION_PROMPT.format(content=message.content)
        try:
            compressed = await complete_with_timeout(self._inference, prompt, self._timeout)
        except ExternalServiceError as e:
            logger.warning(f"Message compression failed, keeping original: {e}")
            return message

        compressed = compressed.strip()
        if not compressed:
            logger.warning("Message compression returned nothing, keeping original")
            return message
        return message.model_copy(update={"content": compressed})
