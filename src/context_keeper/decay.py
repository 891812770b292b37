"""Exponential half-life decay for time-sensitive values.

Stored values keep their original magnitude and the time they were set; the
decayed value is computed at read time and never written back.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Union

from pydantic import BaseModel, field_validator

from .config import DecayClass, DecayConfig

Duration = Union[float, timedelta]

__all__ = [
    "DecayClass",
    "DecayableValue",
    "MoodReading",
    "belief_confidence_at",
    "decay",
    "decay_factor",
    "decay_toward",
    "mood_at",
    "recency_boost",
]


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def decay_factor(elapsed: Duration, half_life: Duration) -> float:
    """Fraction of a value retained after ``elapsed``.

    ``elapsed`` and ``half_life`` must share a unit when given as floats.

    Raises:
        ValueError: If ``half_life`` is not positive.
    """
    half = _seconds(half_life)
    if half <= 0:
        raise ValueError(f"half_life must be positive, got {half_life!r}")
    # Clock skew must not inflate a value
    elapsed_s = max(0.0, _seconds(elapsed))
    return 0.5 ** (elapsed_s / half)


def decay(original: float, elapsed: Duration, half_life: Duration) -> float:
    """``original * 0.5 ** (elapsed / half_life)``."""
    return original * decay_factor(elapsed, half_life)


def decay_toward(value: float, baseline: float, elapsed: Duration, half_life: Duration) -> float:
    """Move ``value`` toward ``baseline``, halving the gap every half-life."""
    return baseline + (value - baseline) * decay_factor(elapsed, half_life)


class DecayableValue(BaseModel):
    """A value recorded at ``set_at`` that fades with ``half_life``."""

    original: float
    set_at: datetime
    half_life: timedelta

    @field_validator("half_life")
    @classmethod
    def _validate_half_life(cls, value: timedelta) -> timedelta:
        if value.total_seconds() <= 0:
            raise ValueError("half_life must be positive")
        return value

    @classmethod
    def for_class(
        cls,
        original: float,
        set_at: datetime,
        decay_class: DecayClass,
        config: DecayConfig | None = None,
    ) -> "DecayableValue":
        config = config or DecayConfig()
        return cls(original=original, set_at=set_at, half_life=config.half_life(decay_class))

    def value_at(self, now: datetime) -> float:
        return decay(self.original, now - self.set_at, self.half_life)


class MoodReading(BaseModel):
    """Mood after decay toward baseline."""

    valence: float
    arousal: float
    elapsed_minutes: float
    decay_applied: bool


def mood_at(
    valence: float,
    arousal: float,
    last_update: datetime,
    now: datetime,
    config: DecayConfig | None = None,
    half_life: timedelta | None = None,
) -> MoodReading:
    """Decay mood toward its baseline.

    Readings taken within the minimum interval of the last update are
    returned unchanged.

    Args:
        valence: Stored valence
        arousal: Stored arousal
        last_update: When the mood was stored
        now: Read time
        config: Decay settings
        half_life: Overrides the configured mood half-life

    Returns:
        MoodReading: Decayed valence and arousal
    """
    config = config or DecayConfig()
    elapsed = max(timedelta(0), now - last_update)
    elapsed_minutes = elapsed.total_seconds() / 60

    if elapsed_minutes < config.mood_min_decay_interval_minutes:
        return MoodReading(
            valence=valence,
            arousal=arousal,
            elapsed_minutes=elapsed_minutes,
            decay_applied=False,
        )

    half_life = half_life or config.half_life(DecayClass.MOOD_INTENSITY)
    return MoodReading(
        valence=decay_toward(valence, config.mood_baseline_valence, elapsed, half_life),
        arousal=decay_toward(arousal, config.mood_baseline_arousal, elapsed, half_life),
        elapsed_minutes=elapsed_minutes,
        decay_applied=True,
    )


def belief_confidence_at(
    confidence: float,
    last_update: datetime,
    now: datetime,
    config: DecayConfig | None = None,
) -> float:
    config = config or DecayConfig()
    return decay(confidence, now - last_update, config.half_life(DecayClass.BELIEF_CONFIDENCE))


def recency_boost(
    last_accessed: datetime,
    now: datetime,
    config: DecayConfig | None = None,
) -> float:
    """Retrieval boost for recently touched memories, at most ``memory_recency_max_boost``."""
    config = config or DecayConfig()
    return decay(
        config.memory_recency_max_boost,
        now - last_accessed,
        config.half_life(DecayClass.MEMORY_RECENCY),
    )
