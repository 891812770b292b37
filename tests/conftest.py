"""
context-keeper test fixtures
Shared service doubles and helpers
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from context_keeper.storage import InMemoryStore

TOPICS = ("cat", "code", "food", "music")

BASE_TIME = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeInference:
    """Scripted inference client.

    Each call pops the next scripted response; an exception instance is
    raised instead of returned. The last response repeats once the script
    runs out.
    """

    def __init__(self, *responses, delay: float = 0.0):
        self.responses = list(responses) or [""]
        self.delay = delay
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeEmbeddingProvider:
    """Embeds text as keyword counts over a fixed topic vocabulary."""

    def __init__(self, delay: float = 0.0, fail: Exception | None = None):
        self.delay = delay
        self.fail = fail
        self.calls: list[list[str]] = []

    @staticmethod
    def vector(text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(topic)) for topic in TOPICS]

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return [self.vector(t) for t in texts]


def at(minutes: float) -> datetime:
    """Timestamp ``minutes`` after a fixed base time."""
    return BASE_TIME + timedelta(minutes=minutes)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider()
