"""Core data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ScoreSource(str, Enum):
    """Which path produced an importance score."""

    EXTERNAL = "external"
    HEURISTIC = "heuristic"


class Message(BaseModel):
    """A single conversation message.

    Messages are immutable; chapter assignment produces a copy.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    role: Role
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    chapter_id: int | None = None

    def with_chapter(self, chapter_id: int | None) -> "Message":
        return self.model_copy(update={"chapter_id": chapter_id})


class Chapter(BaseModel):
    """A topical span of conversation."""

    id: int
    title: str
    summary: str
    start_message_id: int | None = None
    end_message_id: int | None = None
    centroid: list[float] | None = None
    keywords: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.end_message_id is None


class ChapterSummary(BaseModel):
    """Generated title/summary/keywords for a closing chapter."""

    title: str
    summary: str
    keywords: list[str] = Field(default_factory=list)
    placeholder: bool = False


class BoundaryCheck(BaseModel):
    """Outcome of a chapter boundary check."""

    closed: bool = False
    reason: str | None = None  # "idle_gap", "message_cap", "topic_drift"
    message_count: int = 0
    similarity: float | None = None
    closed_chapter: Chapter | None = None
    new_chapter: Chapter | None = None


class ImportanceScore(BaseModel):
    """Importance rating of a user/assistant exchange."""

    importance: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    should_preserve: bool = False
    source: ScoreSource = ScoreSource.HEURISTIC
    key_concepts: list[str] = Field(default_factory=list)


class ScoredMessage(BaseModel):
    """A message paired with its importance and original position."""

    message: Message
    score: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    should_preserve: bool = False
    index: int
    source: ScoreSource = ScoreSource.HEURISTIC


class ContextComponent(BaseModel):
    """A named, prioritised content block for the budgeter."""

    name: str
    content: str
    priority: float
    min_tokens: int | None = None
    max_tokens: int | None = None


class MemoryRecord(BaseModel):
    """A long-term memory archived from conversation."""

    id: int
    content: str
    importance: float = 0.5
    source_key: str | None = None
    source_message_id: int | None = None
    privacy: str = "private"
    created_at: datetime = Field(default_factory=_utcnow)
    last_accessed_at: datetime = Field(default_factory=_utcnow)


class MemorySnippet(BaseModel):
    """A retrieval candidate offered to prompt assembly."""

    content: str
    embedding: list[float] | None = None
    score: float = 0.0


class TruncationResult(BaseModel):
    """Outcome of a retention plan."""

    kept: list[Message]
    removed_count: int = 0
    preserved_count: int = 0
    archived_count: int = 0
    archived_memory_ids: list[int] = Field(default_factory=list)
    tokens_saved: int = 0
    strategy_label: str = "none"
    scored: list[ScoredMessage] = Field(default_factory=list)
    degraded: bool = False


class TruncationStats(BaseModel):
    """Importance distribution over a conversation."""

    total_messages: int
    total_tokens: int
    average_score: float
    high_value_messages: int
    medium_value_messages: int
    low_value_messages: int
