"""Configuration models for context-keeper."""

from __future__ import annotations

import os
import re
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator


class DecayClass(str, Enum):
    """Value classes that decay with distinct half-lives."""

    BELIEF_CONFIDENCE = "belief_confidence"
    MOOD_INTENSITY = "mood_intensity"
    MEMORY_RECENCY = "memory_recency"


class TokenConfig(BaseModel):
    """Token estimation settings."""

    per_message_overhead: int = 4
    ellipsis: str = "..."


class EmbeddingConfig(BaseModel):
    """Embedding provider and cache configuration."""

    model: str = "openai/text-embedding-3-small"
    base_url: str | None = "https://openrouter.ai/api/v1"
    api_key: str | None = None
    cache_size: int = Field(default=500, gt=0)
    max_chars: int = Field(default=8000, gt=0)
    timeout_seconds: float = Field(default=30.0, gt=0)


class InferenceConfig(BaseModel):
    """Inference (chat completion) provider configuration."""

    model: str = "google/gemini-2.5-flash"
    base_url: str | None = "https://openrouter.ai/api/v1"
    api_key: str | None = None
    timeout_seconds: float = Field(default=20.0, gt=0)
    temperature: float = 0.3


class ScoringConfig(BaseModel):
    """Importance scoring thresholds and keyword sets."""

    preserve_threshold: float = 0.6

    # Heuristic path
    heuristic_base: float = 0.3
    heuristic_user_length: int = 150
    heuristic_assistant_length: int = 200
    emotional_keywords: list[str] = Field(
        default_factory=lambda: [
            "feel", "love", "hate", "worry", "excited", "sad", "happy", "afraid",
        ]
    )
    salience_keywords: list[str] = Field(
        default_factory=lambda: [
            "remember", "important", "promise", "always", "never", "forever",
        ]
    )

    # Boosts applied on top of an external rating
    boost_user_length: int = 200
    boost_assistant_length: int = 300


class RetentionConfig(BaseModel):
    """Retention planning ("smart truncation") configuration."""

    max_messages: int = Field(default=80, gt=0)
    recent_fraction: float = Field(default=0.6, ge=0.0, le=1.0)
    archive_threshold: float = 0.5
    # Multiplier for heuristic scores when a batch mixes both scoring paths
    heuristic_weight: float = Field(default=1.0, ge=0.0, le=1.0)
    compress_min_chars: int = 200


class BudgetConfig(BaseModel):
    """Token budget for the packed prompt."""

    in_max: int = Field(default=150_000, gt=0)
    reserve_out: float = 0.3

    @field_validator("reserve_out")
    @classmethod
    def _validate_reserve(cls, value: float) -> float:
        if not 0.0 <= value < 1.0:
            raise ValueError(f"reserve_out must be in [0, 1), got {value}")
        return value


class ChapterConfig(BaseModel):
    """Chapter segmentation thresholds."""

    idle_gap_hours: float = 2.0
    max_messages: int = 150
    drift_min_messages: int = 10
    centroid_window: int = 10
    drift_threshold: float = 0.65
    summary_sample_size: int = 20
    summary_snippet_chars: int = 300
    cache_ttl_seconds: float = 30.0


class DecayConfig(BaseModel):
    """Half-lives and baselines for time-decayed state."""

    belief_half_life_days: float = Field(default=14.0, gt=0)
    mood_half_life_minutes: float = Field(default=30.0, gt=0)
    memory_recency_half_life_days: float = Field(default=30.0, gt=0)
    memory_recency_max_boost: float = 0.2
    mood_baseline_valence: float = 0.2
    mood_baseline_arousal: float = 0.4
    mood_min_decay_interval_minutes: float = 5.0

    def half_life(self, decay_class: DecayClass) -> timedelta:
        """Return the configured half-life for a value class."""
        if decay_class is DecayClass.BELIEF_CONFIDENCE:
            return timedelta(days=self.belief_half_life_days)
        if decay_class is DecayClass.MOOD_INTENSITY:
            return timedelta(minutes=self.mood_half_life_minutes)
        return timedelta(days=self.memory_recency_half_life_days)


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    backend: str = "memory"  # "memory" or "sqlite"
    sqlite_db_path: str = "./data/context_keeper.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        if self.backend not in ("memory", "sqlite"):
            raise ValueError(f"Unknown storage backend: {self.backend!r}")
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class ContextKeeperConfig(BaseModel):
    """Top-level configuration."""

    tokens: TokenConfig = Field(default_factory=TokenConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    chapters: ChapterConfig = Field(default_factory=ChapterConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    """Read a YAML file, substituting ``${VAR}`` with environment values.

    Unknown variables are left untouched.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the content is not valid YAML.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    content = path.read_text(encoding="utf-8")

    def replacer(match: re.Match) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = _ENV_PATTERN.sub(replacer, content)

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise
    return data or {}


def load_config(config_path: str | Path) -> ContextKeeperConfig:
    """Load and validate a configuration file."""
    config = ContextKeeperConfig.model_validate(read_yaml(config_path))
    logger.info(f"Loaded configuration from {config_path}")
    return config
