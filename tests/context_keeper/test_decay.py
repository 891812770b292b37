"""Tests for half-life decay and the temporal helpers built on it."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from conftest import at
from context_keeper.config import DecayConfig
from context_keeper.decay import (
    DecayableValue,
    DecayClass,
    belief_confidence_at,
    decay,
    decay_toward,
    mood_at,
    recency_boost,
)


class TestDecay:
    def test_one_half_life_halves(self):
        assert decay(0.8, 14, 14) == pytest.approx(0.4)

    def test_zero_elapsed_is_identity(self):
        assert decay(0.8, 0, 14) == 0.8

    def test_accepts_timedeltas(self):
        value = decay(1.0, timedelta(minutes=60), timedelta(minutes=30))
        assert value == pytest.approx(0.25)

    def test_monotonic_non_increasing(self):
        values = [decay(1.0, t, 10) for t in range(0, 100, 5)]
        assert all(a >= b for a, b in zip(values, values[1:]))
        assert all(v > 0 for v in values)

    def test_negative_elapsed_clamped(self):
        assert decay(0.5, -10, 14) == 0.5

    def test_non_positive_half_life_rejected(self):
        with pytest.raises(ValueError):
            decay(1.0, 1, 0)
        with pytest.raises(ValueError):
            decay(1.0, 1, timedelta(0))

    def test_decay_toward_baseline(self):
        assert decay_toward(1.0, 0.2, 30, 30) == pytest.approx(0.6)
        assert decay_toward(0.2, 0.2, 300, 30) == pytest.approx(0.2)


class TestDecayableValue:
    def test_value_derived_at_read_time(self):
        value = DecayableValue(original=0.9, set_at=at(0), half_life=timedelta(days=14))

        assert value.value_at(at(0)) == pytest.approx(0.9)
        assert value.value_at(at(14 * 24 * 60)) == pytest.approx(0.45)
        assert value.original == 0.9

    def test_for_class_uses_configured_half_life(self):
        value = DecayableValue.for_class(1.0, at(0), DecayClass.MOOD_INTENSITY)
        assert value.half_life == timedelta(minutes=30)
        assert value.value_at(at(30)) == pytest.approx(0.5)

    def test_half_life_must_be_positive(self):
        with pytest.raises(ValidationError):
            DecayableValue(original=1.0, set_at=at(0), half_life=timedelta(0))


class TestTemporalHelpers:
    def test_half_lives_per_class(self):
        config = DecayConfig()
        assert config.half_life(DecayClass.BELIEF_CONFIDENCE) == timedelta(days=14)
        assert config.half_life(DecayClass.MOOD_INTENSITY) == timedelta(minutes=30)
        assert config.half_life(DecayClass.MEMORY_RECENCY) == timedelta(days=30)

    def test_mood_unchanged_within_min_interval(self):
        reading = mood_at(0.9, 0.9, at(0), at(4))
        assert reading.decay_applied is False
        assert (reading.valence, reading.arousal) == (0.9, 0.9)

    def test_mood_decays_toward_baseline(self):
        reading = mood_at(1.0, 0.0, at(0), at(30))
        assert reading.decay_applied is True
        assert reading.valence == pytest.approx(0.6)
        assert reading.arousal == pytest.approx(0.2)
        assert reading.elapsed_minutes == pytest.approx(30)

    def test_belief_confidence(self):
        assert belief_confidence_at(0.8, at(0), at(28 * 24 * 60)) == pytest.approx(0.2)

    def test_recency_boost(self):
        assert recency_boost(at(0), at(0)) == pytest.approx(0.2)
        assert recency_boost(at(0), at(30 * 24 * 60)) == pytest.approx(0.1)
