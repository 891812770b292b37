"""Tests for structured-output parsing and bounded completions."""

from __future__ import annotations

import pytest

from conftest import FakeInference
from context_keeper.exceptions import ExternalServiceError, MalformedResponseError
from context_keeper.llm import complete_with_timeout, extract_json_object, request_json


class TestExtractJsonObject:
    def test_plain_object(self):
        assert extract_json_object('{"importance": 0.4}') == {"importance": 0.4}

    def test_object_wrapped_in_prose_and_fences(self):
        text = 'Sure! Here you go:\n```json\n{"title": "Cats", "keywords": ["pets"]}\n```\nHope it helps {:'
        assert extract_json_object(text) == {"title": "Cats", "keywords": ["pets"]}

    def test_nested_braces_kept_whole(self):
        text = 'x {"a": {"b": 1}, "c": "}"} y'
        assert extract_json_object(text) == {"a": {"b": 1}, "c": "}"}

    def test_skips_broken_candidates(self):
        assert extract_json_object('{oops} then {"ok": true}') == {"ok": True}

    def test_nothing_parsable(self):
        with pytest.raises(MalformedResponseError) as exc_info:
            extract_json_object("no json here")
        assert exc_info.value.raw == "no json here"


class TestBoundedCalls:
    @pytest.mark.asyncio
    async def test_timeout(self):
        client = FakeInference("late", delay=0.5)
        with pytest.raises(ExternalServiceError):
            await complete_with_timeout(client, "prompt", timeout=0.01)

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        client = FakeInference(RuntimeError("502"))
        with pytest.raises(ExternalServiceError) as exc_info:
            await complete_with_timeout(client, "prompt", timeout=1.0)
        assert exc_info.value.service == "inference"

    @pytest.mark.asyncio
    async def test_request_json(self):
        client = FakeInference('Result: {"importance": 0.9}')
        assert await request_json(client, "rate this", timeout=1.0) == {"importance": 0.9}
        assert client.prompts == ["rate this"]

    @pytest.mark.asyncio
    async def test_request_json_malformed(self):
        client = FakeInference("I cannot rate that.")
        with pytest.raises(MalformedResponseError):
            await request_json(client, "rate this", timeout=1.0)
