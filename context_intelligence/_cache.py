# Copyright (c) Microsoft. All rights reserved.

"""Prompt cache key lifecycle.

A cache key identifies the static part of a request (system prompt and
workspace files) to the model provider. Reusing the same key while the
provider-side cache is warm is what makes the cache hit, so a key is reused
verbatim for ``warmup`` minutes as long as the static context, the model and
the extra cache context are unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from ._fingerprint import CONTEXT_HASH_LENGTH, compute_content_hash, create_cache_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKeyState:
    """The most recently minted cache key and what it was minted for.

    Attributes:
        key: The cache key string sent to the provider.
        combined_hash: Static context identity the key was minted for.
        model_id: Model the key was minted for.
        context_hash: Digest of the extra cache context, or None.
        minted_at: When the key was minted.
    """

    key: str
    combined_hash: str
    model_id: str
    context_hash: str | None
    minted_at: datetime

    def matches(self, combined_hash: str, model_id: str, context_hash: str | None) -> bool:
        return (self.combined_hash, self.model_id, self.context_hash) == (combined_hash, model_id, context_hash)

    def is_warm(self, now: datetime, warmup_minutes: float) -> bool:
        return now - self.minted_at < timedelta(minutes=warmup_minutes)


def resolve_cache_key(
    state: CacheKeyState | None,
    combined_hash: str,
    model_id: str,
    *,
    now: datetime,
    warmup_minutes: float,
    cache_context: str | None = None,
) -> tuple[CacheKeyState, bool]:
    """Reuse the previous cache key if still valid, otherwise mint a new one.

    New keys fold the mint time into their suffix, so a key minted after the
    warmup window never repeats an expired one.

    Args:
        state: The previous cache key state, if any.
        combined_hash: Identity of the current static context.
        model_id: Model the request targets.
        now: Current time.
        warmup_minutes: How long a key stays reusable.
        cache_context: Extra text that scopes the key (e.g. a tool schema).

    Returns:
        Tuple of (state to keep, whether the previous key was reused).
    """
    context_hash = compute_content_hash(cache_context, CONTEXT_HASH_LENGTH) if cache_context else None

    if (
        state is not None
        and state.matches(combined_hash, model_id, context_hash)
        and state.is_warm(now, warmup_minutes)
    ):
        return state, True

    salt = f"{context_hash or ''}@{now.isoformat()}"
    new_state = CacheKeyState(
        key=create_cache_key(combined_hash, model_id, salt),
        combined_hash=combined_hash,
        model_id=model_id,
        context_hash=context_hash,
        minted_at=now,
    )
    logger.debug("Minted prompt cache key %s for model %s", new_state.key, model_id)
    return new_state, False
