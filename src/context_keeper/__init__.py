"""
context-keeper - bounded conversation context for stateful agents

Decides which history, memories and persona content fit a token budget,
archives what gets trimmed, segments the conversation into topical
chapters and decays time-sensitive values at read time.
"""

from .budgeter import Budgeter, PackResult
from .chapters import ChapterSegmenter, OpenChapterCache
from .config import ContextKeeperConfig, DecayClass, load_config
from .decay import DecayableValue, decay
from .embedding import EmbeddingCache, EmbeddingService
from .engine import AssembledContext, ContextEngine
from .exceptions import (
    ContextKeeperError,
    DimensionMismatchError,
    ExternalServiceError,
    MalformedResponseError,
    StorageError,
)
from .importance import ImportanceScorer
from .models import Chapter, ContextComponent, MemorySnippet, Message, Role, TruncationResult
from .retention import RetentionPlanner
from .similarity import centroid, cosine_similarity, diversity_select, euclidean_distance
from .token_counter import TokenCounter, estimate_tokens, truncate_to_tokens

__all__ = [
    "AssembledContext",
    "Budgeter",
    "Chapter",
    "ChapterSegmenter",
    "ContextComponent",
    "ContextEngine",
    "ContextKeeperConfig",
    "ContextKeeperError",
    "DecayClass",
    "DecayableValue",
    "DimensionMismatchError",
    "EmbeddingCache",
    "EmbeddingService",
    "ExternalServiceError",
    "ImportanceScorer",
    "MalformedResponseError",
    "MemorySnippet",
    "Message",
    "OpenChapterCache",
    "PackResult",
    "RetentionPlanner",
    "Role",
    "StorageError",
    "TokenCounter",
    "TruncationResult",
    "centroid",
    "cosine_similarity",
    "decay",
    "diversity_select",
    "estimate_tokens",
    "euclidean_distance",
    "load_config",
    "truncate_to_tokens",
]
