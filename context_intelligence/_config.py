# Copyright (c) Microsoft. All rights reserved.

"""Configuration for compression and orchestration.

Configs are plain dataclasses. ``from_dict`` merges partial settings over the
defaults. Out-of-range values are clamped with a warning rather than rejected,
so a bad setting never breaks a model call.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_TOKENS = 200_000
DEFAULT_TARGET_CONTEXT_TOKENS = 150_000
DEFAULT_RESERVE_TOKENS = 10_000
DEFAULT_CACHE_WARMUP_MINUTES = 55.0  # Just under the provider's 1h cache TTL
DEFAULT_CACHE_KEY_DIGEST_LENGTH = 16
MIN_DIGEST_LENGTH = 8
MAX_DIGEST_LENGTH = 64


def _clamp(name: str, value: float, low: float, high: float) -> float:
    if value < low or value > high:
        clamped = min(max(value, low), high)
        logger.warning("Config %s=%s out of range [%s, %s], clamped to %s", name, value, low, high, clamped)
        return clamped
    return value


def _non_negative(name: str, value: int) -> int:
    if value < 0:
        logger.warning("Config %s=%s is negative, clamped to 0", name, value)
        return 0
    return value


@dataclass
class CompressionConfig:
    """Compressor settings.

    Attributes:
        max_token_budget: Default budget for batch compression.
        target_compression_ratio: Fraction of tokens to keep when no target is given.
        preserve_recent: Number of most recent messages never excluded.
        preserve_importance: Importance at or above which only light trimming applies.
        enable_summarization: Route ordinary messages through the summarizer.
        enable_semantic: Use structure-aware compression for tool results.
        enable_dedup: Collapse exact duplicate messages before progressive compression.
    """

    max_token_budget: int = 100_000
    target_compression_ratio: float = 0.5
    preserve_recent: int = 5
    preserve_importance: float = 0.8
    enable_summarization: bool = True
    enable_semantic: bool = True
    enable_dedup: bool = False

    def __post_init__(self) -> None:
        self.max_token_budget = _non_negative("compression.max_token_budget", self.max_token_budget)
        self.target_compression_ratio = _clamp(
            "compression.target_compression_ratio", self.target_compression_ratio, 0.0, 1.0
        )
        self.preserve_recent = _non_negative("compression.preserve_recent", self.preserve_recent)
        self.preserve_importance = _clamp("compression.preserve_importance", self.preserve_importance, 0.0, 1.0)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CompressionConfig:
        """Build a config from partial settings merged over defaults."""
        known = {f.name for f in fields(cls)}
        data = data or {}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown compression settings: %s", sorted(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class ProgressiveThreshold:
    """Upper age bound (minutes) of a compression level.

    Messages younger than ``minutes`` (and older than the previous threshold)
    get ``compression_level``. Level 0 leaves a message untouched; each level
    keeps 20% fewer tokens.
    """

    minutes: float
    compression_level: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "minutes": None if math.isinf(self.minutes) else self.minutes,
            "compression_level": self.compression_level,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressiveThreshold:
        minutes = data.get("minutes")
        return cls(
            minutes=math.inf if minutes is None else float(minutes),
            compression_level=int(data.get("compression_level", data.get("level", 0))),
        )


DEFAULT_PROGRESSIVE_THRESHOLDS: tuple[ProgressiveThreshold, ...] = (
    ProgressiveThreshold(5, 0),  # 0-5 min: untouched
    ProgressiveThreshold(30, 1),  # 5-30 min: light
    ProgressiveThreshold(60, 2),  # 30-60 min: medium
    ProgressiveThreshold(180, 3),  # 1-3 h: strong
    ProgressiveThreshold(math.inf, 4),  # > 3 h: maximum
)


def normalize_thresholds(
    thresholds: list[ProgressiveThreshold] | tuple[ProgressiveThreshold, ...],
) -> list[ProgressiveThreshold]:
    """Clamp negative values and sort thresholds by minutes, ascending."""
    normalized: list[ProgressiveThreshold] = []
    for threshold in thresholds:
        minutes = threshold.minutes
        level = threshold.compression_level
        if minutes < 0 or level < 0:
            logger.warning("Progressive threshold %s has negative values, clamped to 0", threshold)
            minutes = max(minutes, 0)
            level = max(level, 0)
        normalized.append(ProgressiveThreshold(minutes, level))
    normalized.sort(key=lambda t: t.minutes)
    return normalized


@dataclass
class OrchestratorConfig:
    """Orchestrator settings.

    Selection targets ``target_context_tokens``; ``reserve_tokens`` is response
    headroom that is never allocated to content.

    Attributes:
        max_context_tokens: Hard context window of the model.
        target_context_tokens: Token usage the orchestrator aims to stay under.
        reserve_tokens: Headroom kept for the model's response.
        compression: Compressor settings.
        progressive_thresholds: Age ladder for progressive compression.
        enable_prompt_caching: Mint and reuse prompt cache keys.
        cache_warmup_interval: Minutes a cache key stays reusable.
        cache_key_digest_length: Hex length of the static-context digest in cache keys.
        enable_importance_scoring: Use role-based importance; otherwise every message scores 0.5.
    """

    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    target_context_tokens: int = DEFAULT_TARGET_CONTEXT_TOKENS
    reserve_tokens: int = DEFAULT_RESERVE_TOKENS
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    progressive_thresholds: list[ProgressiveThreshold] = field(
        default_factory=lambda: list(DEFAULT_PROGRESSIVE_THRESHOLDS)
    )
    enable_prompt_caching: bool = True
    cache_warmup_interval: float = DEFAULT_CACHE_WARMUP_MINUTES
    cache_key_digest_length: int = DEFAULT_CACHE_KEY_DIGEST_LENGTH
    enable_importance_scoring: bool = True

    def __post_init__(self) -> None:
        self.max_context_tokens = _non_negative("max_context_tokens", self.max_context_tokens)
        self.target_context_tokens = _non_negative("target_context_tokens", self.target_context_tokens)
        self.reserve_tokens = _non_negative("reserve_tokens", self.reserve_tokens)
        usable = max(0, self.max_context_tokens - self.reserve_tokens)
        if self.target_context_tokens > usable:
            logger.warning(
                "target_context_tokens=%d exceeds max_context_tokens - reserve_tokens, clamped to %d",
                self.target_context_tokens,
                usable,
            )
            self.target_context_tokens = usable
        if self.cache_warmup_interval < 0:
            logger.warning("cache_warmup_interval=%s is negative, clamped to 0", self.cache_warmup_interval)
            self.cache_warmup_interval = 0.0
        self.cache_key_digest_length = int(
            _clamp("cache_key_digest_length", self.cache_key_digest_length, MIN_DIGEST_LENGTH, MAX_DIGEST_LENGTH)
        )
        self.progressive_thresholds = normalize_thresholds(self.progressive_thresholds)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "max_context_tokens": self.max_context_tokens,
            "target_context_tokens": self.target_context_tokens,
            "reserve_tokens": self.reserve_tokens,
            "compression": self.compression.to_dict(),
            "progressive_thresholds": [t.to_dict() for t in self.progressive_thresholds],
            "enable_prompt_caching": self.enable_prompt_caching,
            "cache_warmup_interval": self.cache_warmup_interval,
            "cache_key_digest_length": self.cache_key_digest_length,
            "enable_importance_scoring": self.enable_importance_scoring,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> OrchestratorConfig:
        """Build a config from partial settings merged over defaults.

        ``compression`` may itself be partial; ``progressive_thresholds`` is a
        list of ``{"minutes": ..., "compression_level": ...}`` where a null
        ``minutes`` means unbounded.
        """
        data = dict(data or {})
        kwargs: dict[str, Any] = {}
        if "compression" in data:
            kwargs["compression"] = CompressionConfig.from_dict(data.pop("compression"))
        if "progressive_thresholds" in data:
            kwargs["progressive_thresholds"] = [
                t if isinstance(t, ProgressiveThreshold) else ProgressiveThreshold.from_dict(t)
                for t in data.pop("progressive_thresholds")
            ]
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown orchestrator settings: %s", sorted(unknown))
        kwargs.update({k: v for k, v in data.items() if k in known})
        return cls(**kwargs)
