"""Embedding service with a bounded LRU cache.

The cache is shared mutable state between the chapter segmenter and any
retrieval path, so every operation takes a lock. Provider calls are bounded
by a timeout and surface as ``ExternalServiceError``: embeddings have no
fallback.
"""

from __future__ import annotations

import asyncio
import struct
from collections import OrderedDict
from threading import Lock
from typing import Protocol, Sequence, runtime_checkable

from loguru import logger
from openai import AsyncOpenAI

from .config import EmbeddingConfig
from .exceptions import ExternalServiceError


class EmbeddingCache:
    """Fixed-capacity text -> vector cache with least-recently-used eviction.

    Features:
    - ``get`` promotes a hit to most-recently-used
    - inserting a new key at capacity evicts the LRU entry first
    - thread safe; hit/miss/eviction statistics
    """

    def __init__(self, capacity: int = 500):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._lock = Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._cache

    def get(self, key: str) -> list[float] | None:
        """Return the cached vector, or None on a miss."""
        with self._lock:
            vector = self._cache.get(key)
            if vector is None:
                self._stats["misses"] += 1
                return None
            self._cache.move_to_end(key)
            self._stats["hits"] += 1
            return vector

    def set(self, key: str, vector: list[float]) -> None:
        """Insert or refresh an entry, evicting the LRU entry if full."""
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                self._cache[key] = vector
                return
            while len(self._cache) >= self._capacity:
                evicted, _ = self._cache.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug(f"Evicted embedding cache entry ({len(evicted)} chars)")
            self._cache[key] = vector

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            self._cache.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {**self._stats, "size": len(self._cache)}


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Narrow contract for an embedding backend."""

    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...


class OpenAIEmbeddingProvider:
    """Embedding provider for OpenAI-compatible ``/embeddings`` endpoints."""

    def __init__(self, config: EmbeddingConfig | None = None):
        self._config = config or EmbeddingConfig()
        self._client = AsyncOpenAI(
            base_url=self._config.base_url, api_key=self._config.api_key
        )
        logger.debug(
            f"OpenAIEmbeddingProvider initialized (model: {self._config.model}, "
            f"base_url: {self._config.base_url})"
        )

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        response = await self._client.embeddings.create(
            model=self._config.model, input=texts
        )
        return [list(item.embedding) for item in response.data]


class EmbeddingService:
    """Cached, timeout-bounded access to an embedding provider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache | None = None,
        config: EmbeddingConfig | None = None,
    ):
        """Initialize embedding service.

        Args:
            provider: Embedding backend
            cache: Shared cache; a private one sized from config if omitted
            config: Embedding configuration
        """
        self._config = config or EmbeddingConfig()
        self._provider = provider
        self._cache = cache or EmbeddingCache(self._config.cache_size)

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    def _clip(self, text: str) -> str:
        max_chars = self._config.max_chars
        if len(text) > max_chars:
            logger.warning(f"Embedding input truncated from {len(text)} to {max_chars} chars")
            return text[:max_chars]
        return text

    async def _call(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._config.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(f"Embedding {what} timed out after {self._config.timeout_seconds}s")
            raise ExternalServiceError("embedding", "timeout") from e
        except ExternalServiceError:
            raise
        except Exception as e:
            logger.error(f"Embedding {what} failed: {e}")
            raise ExternalServiceError("embedding", str(e)) from e

    async def embed(self, text: str) -> list[float]:
        """Embed a single text.

        Raises:
            ValueError: If the text is empty.
            ExternalServiceError: On timeout, transport error or an empty vector.
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        text = self._clip(text)
        cached = self._cache.get(text)
        if cached is not None:
            logger.debug("Embedding cache hit")
            return cached

        vector = await self._call(self._provider.embed(text), "request")
        if not vector:
            raise ExternalServiceError("embedding", "empty embedding returned")

        vector = [float(x) for x in vector]
        self._cache.set(text, vector)
        logger.debug(f"Embedding generated, dimension: {len(vector)}")
        return vector

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float] | None]:
        """Embed many texts, serving cache hits and skipping empty ones.

        Returns a list aligned with ``texts``; empty inputs map to ``None``.
        """
        results: list[list[float] | None] = [None] * len(texts)
        to_embed: list[str] = []
        indices: list[int] = []

        for idx, text in enumerate(texts):
            if not text or not text.strip():
                logger.warning(f"Skipping empty text at index {idx}")
                continue
            clipped = self._clip(text)
            cached = self._cache.get(clipped)
            if cached is not None:
                results[idx] = cached
            else:
                to_embed.append(clipped)
                indices.append(idx)

        if not to_embed:
            return results

        vectors = await self._call(self._provider.embed_batch(to_embed), "batch request")
        if not isinstance(vectors, list) or len(vectors) != len(to_embed):
            got = len(vectors) if isinstance(vectors, list) else 0
            raise ExternalServiceError(
                "embedding", f"expected {len(to_embed)} embeddings, got {got}"
            )

        for idx, text, vector in zip(indices, to_embed, vectors):
            vector = [float(x) for x in vector]
            results[idx] = vector
            self._cache.set(text, vector)

        logger.debug(
            f"Batch embedded {len(to_embed)} texts "
            f"({len(texts) - len(to_embed)} cached or skipped)"
        )
        return results

    @staticmethod
    def serialize_embedding(embedding: list[float]) -> bytes:
        """Serialize embedding to bytes for SQLite BLOB storage.

        Args:
            embedding: Embedding vector as list of floats

        Returns:
            Packed bytes (little-endian float32)
        """
        return struct.pack(f"<{len(embedding)}f", *embedding)

    @staticmethod
    def deserialize_embedding(blob: bytes) -> list[float]:
        """Deserialize embedding from SQLite BLOB.

        Args:
            blob: Packed bytes from SQLite

        Returns:
            Embedding vector as list of floats
        """
        count = len(blob) // 4  # float32 = 4 bytes
        return list(struct.unpack(f"<{count}f", blob))
