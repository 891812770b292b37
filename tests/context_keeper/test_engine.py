"""Tests for the ContextEngine facade."""

from __future__ import annotations

import json

import pytest

from conftest import FakeEmbeddingProvider, FakeInference, at
from context_keeper.config import BudgetConfig, ContextKeeperConfig, StorageConfig
from context_keeper.engine import ContextEngine
from context_keeper.models import MemorySnippet, Message, Role
from context_keeper.storage import InMemoryStore, SQLiteStore


@pytest.fixture
def engine():
    return ContextEngine.from_config(embedding_provider=FakeEmbeddingProvider())


class TestFromConfig:
    def test_defaults(self):
        engine = ContextEngine.from_config()
        assert isinstance(engine.store, InMemoryStore)
        assert engine.embeddings is None
        assert engine.budgeter.available == 105_000

    def test_sqlite_backend(self, tmp_path):
        config = ContextKeeperConfig(
            storage=StorageConfig(backend="sqlite", sqlite_db_path=str(tmp_path / "ck.db"))
        )
        assert isinstance(ContextEngine.from_config(config).store, SQLiteStore)

    @pytest.mark.asyncio
    async def test_sqlite_lifecycle(self, tmp_path):
        config = ContextKeeperConfig(
            storage=StorageConfig(backend="sqlite", sqlite_db_path=str(tmp_path / "ck.db"))
        )
        engine = ContextEngine.from_config(config)
        await engine.initialize()
        message = await engine.record_message(Role.USER, "hello there", created_at=at(0))
        await engine.close()

        assert message.id == 1
        assert message.chapter_id is not None


class TestRecordMessage:
    @pytest.mark.asyncio
    async def test_assigns_open_chapter(self, engine):
        message = await engine.record_message("user", "hi", created_at=at(0))
        chapter = await engine.segmenter.current_chapter()

        assert message.chapter_id == chapter.id
        assert engine.last_boundary is not None
        assert engine.last_boundary.closed is False

    @pytest.mark.asyncio
    async def test_system_messages_skip_boundary_check(self):
        engine = ContextEngine.from_config()
        await engine.record_message(Role.SYSTEM, "setup", created_at=at(0))
        assert engine.last_boundary is None

    @pytest.mark.asyncio
    async def test_idle_gap_starts_new_chapter(self, engine):
        await engine.record_message(Role.USER, "hello", created_at=at(0))
        await engine.record_message(Role.ASSISTANT, "hi", created_at=at(1))
        trigger = await engine.record_message(Role.USER, "back", created_at=at(200))

        boundary = engine.last_boundary
        assert boundary.closed is True
        assert boundary.reason == "idle_gap"
        assert boundary.closed_chapter.end_message_id == trigger.id
        assert trigger.chapter_id == boundary.closed_chapter.id

        follow_up = await engine.record_message(Role.ASSISTANT, "welcome back", created_at=at(201))
        assert follow_up.chapter_id == boundary.new_chapter.id

    @pytest.mark.asyncio
    async def test_message_lands_in_chapter_opened_by_other_engine(self):
        store = InMemoryStore()
        first = ContextEngine.from_config(store=store)
        second = ContextEngine.from_config(store=store)

        await first.record_message(Role.USER, "hello", created_at=at(0))
        await second.record_message(Role.ASSISTANT, "hi", created_at=at(1))
        await first.record_message(Role.USER, "back", created_at=at(200))
        assert first.last_boundary.closed is True

        reply = await second.record_message(Role.ASSISTANT, "welcome back", created_at=at(201))

        assert reply.chapter_id == first.last_boundary.new_chapter.id
        assert reply.chapter_id == (await store.get_open_chapter()).id


class TestSelectMemories:
    candidates = ["my cat", "cat food", "code tips"]

    @pytest.mark.asyncio
    async def test_relevance_with_novelty(self, engine):
        selected = await engine.select_memories("cat", self.candidates, k=2)
        assert [s.content for s in selected] == ["my cat", "cat food"]
        assert selected[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_low_lambda_diversifies(self, engine):
        selected = await engine.select_memories("cat", self.candidates, k=2, lambda_=0.3)
        assert [s.content for s in selected] == ["my cat", "code tips"]

    @pytest.mark.asyncio
    async def test_uses_existing_embeddings(self):
        provider = FakeEmbeddingProvider()
        engine = ContextEngine.from_config(embedding_provider=provider)
        snippet = MemorySnippet(content="anything", embedding=[1.0, 0.0, 0.0, 0.0])

        selected = await engine.select_memories("cat", [snippet], k=1)

        assert [s.embedding for s in selected] == [snippet.embedding]
        assert provider.calls == [["cat"]]

    @pytest.mark.asyncio
    async def test_caller_snippets_not_mutated(self, engine):
        snippets = [MemorySnippet(content=c) for c in self.candidates]

        selected = await engine.select_memories("cat", snippets, k=2)

        assert selected[0].score == pytest.approx(1.0)
        assert all(s.embedding is None and s.score == 0.0 for s in snippets)

    @pytest.mark.asyncio
    async def test_without_embeddings_keeps_input_order(self):
        engine = ContextEngine.from_config()
        selected = await engine.select_memories("cat", self.candidates, k=2)
        assert [s.content for s in selected] == ["my cat", "cat food"]

    @pytest.mark.asyncio
    async def test_empty_candidates(self, engine):
        assert await engine.select_memories("cat", ["", "  "], k=3) == []


class TestAssemble:
    @staticmethod
    def history(n: int) -> list[Message]:
        messages = []
        for i in range(n):
            role = Role.USER if i % 2 == 0 else Role.ASSISTANT
            messages.append(Message(id=i + 1, role=role, content=f"turn {i} text"))
        return messages

    @pytest.mark.asyncio
    async def test_blocks_in_priority_order(self, engine):
        result = await engine.assemble(
            "You are Ada.", self.history(4), memories=["User has a cat."]
        )

        assert result.blocks[0] == "You are Ada."
        assert result.blocks[1] == "Relevant memories:\n- User has a cat."
        assert result.blocks[2].startswith("user: turn 0 text")
        assert result.retention.strategy_label == "none"
        assert result.pack.used <= result.pack.available

    @pytest.mark.asyncio
    async def test_history_trimmed(self, engine):
        result = await engine.assemble("persona", self.history(10), max_messages=4)

        assert result.retention.removed_count == 6
        transcript = result.blocks[-1]
        assert "turn 9 text" in transcript
        assert transcript.count("\n") == 3

    @pytest.mark.asyncio
    async def test_chapter_summaries_included(self):
        client = FakeInference(
            json.dumps({"title": "Cats", "summary": "We talked cats.", "keywords": []})
        )
        engine = ContextEngine.from_config(inference=client)
        await engine.record_message(Role.USER, "hello", created_at=at(0))
        await engine.record_message(Role.USER, "later", created_at=at(300))

        result = await engine.assemble("persona", [])

        assert result.blocks == ["persona", "Previous chapters:\n- Cats: We talked cats."]

    @pytest.mark.asyncio
    async def test_respects_budget(self):
        config = ContextKeeperConfig(budget=BudgetConfig(in_max=40, reserve_out=0.5))
        engine = ContextEngine.from_config(config)

        result = await engine.assemble("short persona", self.history(30))

        assert result.pack.available == 20
        assert result.pack.used <= 20
        assert result.blocks[0] == "short persona"
