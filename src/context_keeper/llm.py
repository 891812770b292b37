"""Inference service contract and structured-output helpers."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol, runtime_checkable

from loguru import logger
from openai import AsyncOpenAI

from .config import InferenceConfig
from .exceptions import ExternalServiceError, MalformedResponseError


@runtime_checkable
class InferenceClient(Protocol):
    """Narrow contract for a text completion backend."""

    async def complete(self, prompt: str) -> str:
        ...


class OpenAICompatibleClient:
    """Single-prompt completions against an OpenAI-compatible chat API."""

    def __init__(self, config: InferenceConfig | None = None):
        self._config = config or InferenceConfig()
        self._client = AsyncOpenAI(
            base_url=self._config.base_url, api_key=self._config.api_key
        )
        logger.debug(
            f"OpenAI client initialized (base_url: {self._config.base_url}, "
            f"model: {self._config.model})"
        )

    async def complete(self, prompt: str) -> str:
        response = await self._client.chat.completions.create(
            model=self._config.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self._config.temperature,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first well-formed top-level JSON object in ``text``.

    Surrounding prose and markdown fences are ignored.

    Raises:
        MalformedResponseError: If no JSON object can be decoded.
    """
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    raise MalformedResponseError("No JSON object found in response", raw=text)


async def complete_with_timeout(
    client: InferenceClient, prompt: str, timeout: float
) -> str:
    """Run a completion bounded by ``timeout`` seconds.

    Raises:
        ExternalServiceError: On timeout or any transport failure.
    """
    try:
        return await asyncio.wait_for(client.complete(prompt), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ExternalServiceError("inference", f"timeout after {timeout}s") from e
    except ExternalServiceError:
        raise
    except Exception as e:
        raise ExternalServiceError("inference", str(e)) from e


async def request_json(
    client: InferenceClient, prompt: str, timeout: float
) -> dict[str, Any]:
    """Ask for structured output and parse the first JSON object.

    Raises:
        ExternalServiceError: If the request fails or times out.
        MalformedResponseError: If the response holds no JSON object.
    """
    response = await complete_with_timeout(client, prompt, timeout)
    try:
        return extract_json_object(response)
    except MalformedResponseError:
        logger.debug(f"Raw response: {response[:500]}")
        raise
