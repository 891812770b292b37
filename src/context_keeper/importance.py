"""Importance scoring for user/assistant exchanges.

An external rating is requested first; any timeout, transport failure or
unparsable response falls back to a deterministic heuristic. The result is
tagged with the path that produced it so degraded operation stays visible.
"""

from __future__ import annotations

from loguru import logger

from .config import ScoringConfig
from .exceptions import ExternalServiceError, MalformedResponseError
from .llm import InferenceClient, request_json
from .models import ImportanceScore, ScoreSource

MESSAGE_IMPORTANCE_PROMPT = """\
Analyze this message exchange for importance in maintaining conversation context.

Message pair:
User: \"\"\"{user}\"\"\"
Assistant: \"\"\"{assistant}\"\"\"

Rate the importance (0.0-1.0) based on:
- Emotional significance or vulnerability (+0.3)
- Key facts, decisions, or commitments (+0.3)
- Relationship development or boundaries (+0.3)
- Topic changes or new subjects (+0.2)
- References to earlier conversation (+0.2)
- Humor, creativity, or memorable moments (+0.1)

LOW importance (< 0.4): small talk, greetings, acknowledgments, redundant
information, simple yes/no exchanges, meta-conversation.

HIGH importance (>= 0.6): personal revelations, emotional moments, decisions or
commitments, new topics, critical facts, relationship milestones.

Respond with JSON only, for example:
{{
  "importance": 0.75,
  "rationale": "User shared vulnerable personal information",
  "keyConcepts": ["vulnerability", "family", "trust"],
  "shouldPreserve": true
}}
"""


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def heuristic_score(
    user_text: str, assistant_text: str, config: ScoringConfig | None = None
) -> float:
    """Deterministic importance estimate used when no rating is available."""
    config = config or ScoringConfig()
    score = config.heuristic_base

    if len(user_text) > config.heuristic_user_length:
        score += 0.15
    if len(assistant_text) > config.heuristic_assistant_length:
        score += 0.15
    if "?" in user_text:
        score += 0.1

    lowered = user_text.lower()
    if any(kw in lowered for kw in config.emotional_keywords):
        score += 0.2
    if any(kw in lowered for kw in config.salience_keywords):
        score += 0.15

    return _clamp(score)


class ImportanceScorer:
    """Rates exchanges via the inference service with a heuristic fallback."""

    def __init__(
        self,
        inference: InferenceClient | None = None,
        config: ScoringConfig | None = None,
        timeout: float = 20.0,
    ):
        self._inference = inference
        self._config = config or ScoringConfig()
        self._timeout = timeout

    async def score(self, user_text: str, assistant_text: str) -> ImportanceScore:
        """Score a single user/assistant exchange. Never raises for service faults."""
        if self._inference is None:
            logger.warning("No inference client, using heuristic importance")
            return self._heuristic(user_text, assistant_text, "no inference client")

        prompt = MESSAGE_IMPORTANCE_PROMPT.format(user=user_text, assistant=assistant_text)
        try:
            data = await request_json(self._inference, prompt, self._timeout)
        except ExternalServiceError as e:
            logger.warning(f"Importance rating unavailable, using heuristic: {e}")
            return self._heuristic(user_text, assistant_text, "error")
        except MalformedResponseError as e:
            logger.warning(f"Importance rating unparsable, using heuristic: {e}")
            return self._heuristic(user_text, assistant_text, "unparsable response")

        raw = data.get("importance")
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            logger.warning(f"Importance rating missing numeric importance: {raw!r}")
            return self._heuristic(user_text, assistant_text, "unparsable response")

        return self._from_rating(data, _clamp(float(raw)), user_text, assistant_text)

    def _from_rating(
        self, data: dict, importance: float, user_text: str, assistant_text: str
    ) -> ImportanceScore:
        cfg = self._config
        # Detailed exchanges tend to matter
        if (
            len(user_text) > cfg.boost_user_length
            or len(assistant_text) > cfg.boost_assistant_length
        ):
            importance = min(1.0, importance + 0.1)
        if "?" in user_text:
            importance = min(1.0, importance + 0.05)

        explicit = data.get("shouldPreserve")
        if isinstance(explicit, bool):
            should_preserve = explicit
        else:
            should_preserve = importance >= cfg.preserve_threshold

        concepts = data.get("keyConcepts")
        if not isinstance(concepts, list):
            concepts = []

        rationale = data.get("rationale")
        return ImportanceScore(
            importance=importance,
            rationale=rationale if isinstance(rationale, str) else "",
            should_preserve=should_preserve,
            source=ScoreSource.EXTERNAL,
            key_concepts=[str(c) for c in concepts],
        )

    def _heuristic(self, user_text: str, assistant_text: str, reason: str) -> ImportanceScore:
        importance = heuristic_score(user_text, assistant_text, self._config)
        return ImportanceScore(
            importance=importance,
            rationale=f"Heuristic scoring ({reason})",
            should_preserve=importance >= self._config.preserve_threshold,
            source=ScoreSource.HEURISTIC,
        )
