# Copyright (c) Microsoft. All rights reserved.

"""Running statistics for an orchestrator instance."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class OrchestrationStats:
    """Aggregated counters across orchestrate() calls.

    Attributes:
        total_orchestrations: Number of orchestrate() calls.
        total_messages_processed: Messages fingerprinted across all calls.
        total_messages_excluded: Messages dropped by selection.
        total_compressions: Calls that had to compress.
        total_tokens_saved: Content tokens removed by compression and selection.
        cache_hits: Calls that reused the previous cache key.
        cache_misses: Calls that minted a new cache key.
    """

    total_orchestrations: int = 0
    total_messages_processed: int = 0
    total_messages_excluded: int = 0
    total_compressions: int = 0
    total_tokens_saved: int = 0
    cache_hits: int = 0
    cache_misses: int = 0

    @property
    def cache_hit_rate(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0.0

    def record_orchestration(
        self,
        *,
        messages: int,
        excluded: int,
        compressed: bool,
        tokens_saved: int,
    ) -> None:
        self.total_orchestrations += 1
        self.total_messages_processed += messages
        self.total_messages_excluded += excluded
        if compressed:
            self.total_compressions += 1
        self.total_tokens_saved += max(0, tokens_saved)

    def record_cache_lookup(self, hit: bool) -> None:
        if hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1

    def to_dict(self) -> dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "total_orchestrations": self.total_orchestrations,
            "total_messages_processed": self.total_messages_processed,
            "total_messages_excluded": self.total_messages_excluded,
            "total_compressions": self.total_compressions,
            "total_tokens_saved": self.total_tokens_saved,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": self.cache_hit_rate,
        }
