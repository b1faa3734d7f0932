# Copyright (c) Microsoft. All rights reserved.

"""Context orchestration.

The orchestrator decides what to send to the model:

1. Fingerprint the system prompt, workspace files and messages
2. Compute the token budget per category
3. Within target: send everything unchanged
4. Over target: compress messages progressively by age
5. Still over target: keep the most recent messages, then the most
   important ones that fit, and drop the rest
6. Mint or reuse the prompt cache key for the static context

One orchestrator holds the cache key state of one conversation. Do not share an
instance between conversations; thread ``cache_state`` explicitly instead.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any

from opentelemetry import trace

from ._cache import CacheKeyState, resolve_cache_key
from ._compressor import ContextCompressor
from ._config import DEFAULT_TARGET_CONTEXT_TOKENS, OrchestratorConfig
from ._fingerprint import DEFAULT_IMPORTANCE, SystemContextFingerprint, fingerprint_message, fingerprint_system_context
from ._metrics import OrchestrationStats
from ._store import FingerprintManager
from ._summarizer import Summarizer
from ._tokenizer import Tokenizer, get_default_tokenizer
from ._types import (
    ContextBudget,
    DecisionType,
    FingerprintedMessage,
    OrchestrationDecision,
    OrchestrationResult,
)

logger = logging.getLogger(__name__)

_tracer = trace.get_tracer("context_intelligence")

# Importance differences up to this value are considered ties during selection
IMPORTANCE_TIE_TOLERANCE = 0.1


class ContextOrchestrator:
    """Fits a conversation into the model's context budget.

    Attributes:
        config: Orchestrator settings.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        tokenizer: Tokenizer | None = None,
        summarizer: Summarizer | None = None,
        fingerprint_manager: FingerprintManager | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Orchestrator settings, defaults if omitted.
            tokenizer: Tokenizer used for every token count.
            summarizer: Summarizer passed to the compressor.
            fingerprint_manager: Fingerprint tracking for this conversation.
        """
        self.config = config or OrchestratorConfig()
        self._tokenizer = tokenizer or get_default_tokenizer()
        self._compressor = ContextCompressor(
            self.config.compression,
            summarizer=summarizer,
            tokenizer=self._tokenizer,
        )
        self._fingerprint_manager = fingerprint_manager or FingerprintManager()
        self._cache_state: CacheKeyState | None = None
        self._stats = OrchestrationStats()

    @property
    def compressor(self) -> ContextCompressor:
        return self._compressor

    @property
    def fingerprint_manager(self) -> FingerprintManager:
        return self._fingerprint_manager

    @property
    def cache_state(self) -> CacheKeyState | None:
        """The current cache key state, for persisting between requests."""
        return self._cache_state

    @cache_state.setter
    def cache_state(self, state: CacheKeyState | None) -> None:
        self._cache_state = state

    def orchestrate(
        self,
        system_prompt: str,
        workspace_files: Mapping[str, str] | None,
        messages: Sequence[Mapping[str, Any] | Any],
        model_id: str,
        *,
        cache_context: str | None = None,
        now: datetime | None = None,
    ) -> OrchestrationResult:
        """Produce the context to send to the model.

        Args:
            system_prompt: System prompt text. Returned unmodified.
            workspace_files: Map of path to file content.
            messages: Conversation messages (``id``, ``role``, ``content``,
                optional ``created_at``), oldest first.
            model_id: Model the request targets.
            cache_context: Extra text that scopes the prompt cache key.
            now: Reference time for message ages and cache expiry.

        Returns:
            The orchestration result.
        """
        now = now or datetime.now(timezone.utc)
        decisions: list[OrchestrationDecision] = []

        with _tracer.start_as_current_span(
            "context_intelligence.orchestrate",
            attributes={
                "context_intelligence.model_id": model_id,
                "context_intelligence.message_count": len(messages),
            },
        ) as span:
            system_context = fingerprint_system_context(
                system_prompt,
                workspace_files,
                tokenizer=self._tokenizer,
                digest_length=self.config.cache_key_digest_length,
            )
            fingerprinted = [self._fingerprint(msg, index, now) for index, msg in enumerate(messages)]
            self._track(system_context, fingerprinted)

            budget = self.calculate_budget(system_context, fingerprinted)
            static_tokens = budget.system_prompt + budget.workspace_files
            messages_before = sum(msg.fingerprint.token_estimate for msg in fingerprinted)
            total_current = static_tokens + messages_before
            target = self.config.target_context_tokens

            final_messages = fingerprinted
            compression_applied = False
            excluded_count = 0

            if total_current > target:
                compression_applied = True
                final_messages = self._compress(final_messages, total_current, now, decisions)

                if static_tokens + self._message_tokens(final_messages) > target:
                    final_messages, excluded = self._select_messages(final_messages, max(0, target - static_tokens))
                    excluded_count = len(excluded)
                    for msg in excluded:
                        decisions.append(
                            OrchestrationDecision(
                                type=DecisionType.EXCLUDE,
                                message_id=msg.id,
                                reason=f"Low importance ({msg.fingerprint.importance:.2f}) and outside budget",
                                token_impact=self._tokens(msg),
                            )
                        )

            cache_key: str | None = None
            cache_hit = False
            if self.config.enable_prompt_caching:
                self._cache_state, cache_hit = resolve_cache_key(
                    self._cache_state,
                    system_context.combined_hash,
                    model_id,
                    now=now,
                    warmup_minutes=self.config.cache_warmup_interval,
                    cache_context=cache_context,
                )
                cache_key = self._cache_state.key
                self._stats.record_cache_lookup(cache_hit)

            actual_tokens = static_tokens + self._message_tokens(final_messages)
            self._stats.record_orchestration(
                messages=len(fingerprinted),
                excluded=excluded_count,
                compressed=compression_applied,
                tokens_saved=total_current - actual_tokens,
            )

            span.set_attribute("context_intelligence.tokens_before", total_current)
            span.set_attribute("context_intelligence.tokens_after", actual_tokens)
            span.set_attribute("context_intelligence.compression_applied", compression_applied)
            span.set_attribute("context_intelligence.messages_excluded", excluded_count)
            span.set_attribute("context_intelligence.cache_hit", cache_hit)

        if compression_applied:
            logger.debug(
                "Orchestrated %d messages: %d -> %d tokens (target %d, %d excluded)",
                len(fingerprinted),
                total_current,
                actual_tokens,
                target,
                excluded_count,
            )
            for decision in decisions:
                logger.debug("Decision %s: %s (%d tokens)", decision.type.value, decision.reason, decision.token_impact)

        return OrchestrationResult(
            messages=final_messages,
            system_prompt=system_prompt,
            budget=budget,
            actual_tokens=actual_tokens,
            compression_applied=compression_applied,
            cache_key=cache_key,
            decisions=decisions,
        )

    def _fingerprint(self, message: Mapping[str, Any] | Any, index: int, now: datetime) -> FingerprintedMessage:
        importance = None if self.config.enable_importance_scoring else DEFAULT_IMPORTANCE
        fingerprinted = fingerprint_message(message, importance=importance, created_at=now, tokenizer=self._tokenizer)
        if not fingerprinted.id:
            fingerprinted = replace(fingerprinted, id=f"msg-{index}")
        return fingerprinted

    def _track(self, system_context: SystemContextFingerprint, messages: list[FingerprintedMessage]) -> None:
        """Record this call's fingerprints and forget messages no longer sent."""
        manager = self._fingerprint_manager
        if manager.update_system_prompt(system_context.system_prompt):
            logger.debug("System prompt changed (hash=%s)", system_context.system_prompt.hash)
        changed_files = [
            path for path, fp in system_context.workspace_files.items() if manager.update_workspace_file(path, fp)
        ]
        changed_messages = sum(1 for msg in messages if manager.update_message(msg))
        removed = manager.prune_messages(msg.id for msg in messages)
        if changed_files or changed_messages or removed:
            logger.debug(
                "Fingerprints updated: %d workspace files, %d messages changed, %d messages removed",
                len(changed_files),
                changed_messages,
                len(removed),
            )

    def _compress(
        self,
        messages: list[FingerprintedMessage],
        total_current: int,
        now: datetime,
        decisions: list[OrchestrationDecision],
    ) -> list[FingerprintedMessage]:
        if self.config.compression.enable_dedup:
            deduped = self._compressor.deduplicate(messages)
            if deduped.compression_stats:
                saved = deduped.total_original_tokens - deduped.total_compressed_tokens
                decisions.append(
                    OrchestrationDecision(
                        type=DecisionType.COMPRESS,
                        reason=f"Collapsed {len(deduped.compression_stats)} duplicate messages",
                        token_impact=saved,
                    )
                )
                messages = deduped.messages

        before = self._message_tokens(messages)
        compressed = self._compressor.progressive_compress(
            messages,
            self.config.progressive_thresholds,
            now=now,
        )
        decisions.append(
            OrchestrationDecision(
                type=DecisionType.COMPRESS,
                reason=f"Total tokens {total_current} exceeds target {self.config.target_context_tokens}",
                token_impact=before - self._message_tokens(compressed),
            )
        )
        return compressed

    def _select_messages(
        self,
        messages: list[FingerprintedMessage],
        token_budget: int,
    ) -> tuple[list[FingerprintedMessage], list[FingerprintedMessage]]:
        """Keep recent and important messages within a token budget.

        Returns:
            Tuple of (selected messages in original order, excluded messages).
        """
        indexed = list(enumerate(messages))
        by_recency = sorted(indexed, key=lambda item: (item[1].fingerprint.created_at, item[0]), reverse=True)
        recent = by_recency[: self.config.compression.preserve_recent]
        recent_positions = {position for position, _ in recent}

        def by_priority(a: tuple[int, FingerprintedMessage], b: tuple[int, FingerprintedMessage]) -> int:
            diff = b[1].fingerprint.importance - a[1].fingerprint.importance
            if abs(diff) > IMPORTANCE_TIE_TOLERANCE:
                return 1 if diff > 0 else -1
            key_a = (a[1].fingerprint.created_at, a[0])
            key_b = (b[1].fingerprint.created_at, b[0])
            if key_a == key_b:
                return 0
            return 1 if key_b > key_a else -1

        rest = sorted(
            (item for item in indexed if item[0] not in recent_positions),
            key=cmp_to_key(by_priority),
        )

        current = sum(self._tokens(msg) for _, msg in recent)
        selected = list(recent)
        excluded: list[FingerprintedMessage] = []
        for item in rest:
            tokens = self._tokens(item[1])
            if current + tokens <= token_budget:
                selected.append(item)
                current += tokens
            else:
                excluded.append(item[1])

        selected.sort(key=lambda item: item[0])
        return [msg for _, msg in selected], excluded

    def calculate_budget(
        self,
        system_context: SystemContextFingerprint,
        messages: list[FingerprintedMessage],
    ) -> ContextBudget:
        """Token usage per category, plus the configured reserve."""
        workspace_tokens = sum(fp.token_estimate for fp in system_context.workspace_files.values())
        tool_tokens = sum(msg.fingerprint.token_estimate for msg in messages if msg.role == "tool")
        conversation_tokens = sum(msg.fingerprint.token_estimate for msg in messages if msg.role != "tool")
        reserve = self.config.reserve_tokens
        system_tokens = system_context.system_prompt.token_estimate

        return ContextBudget(
            system_prompt=system_tokens,
            workspace_files=workspace_tokens,
            conversation_history=conversation_tokens,
            tool_results=tool_tokens,
            reserve=reserve,
            total=system_tokens + workspace_tokens + conversation_tokens + tool_tokens + reserve,
        )

    def _tokens(self, message: FingerprintedMessage) -> int:
        if message.compressed_content is not None:
            return self._tokenizer.count_tokens(message.compressed_content)
        return message.fingerprint.token_estimate

    def _message_tokens(self, messages: list[FingerprintedMessage]) -> int:
        return sum(self._tokens(msg) for msg in messages)

    def get_stats(self) -> OrchestrationStats:
        """Statistics accumulated since creation or the last reset."""
        return self._stats

    def reset(self) -> None:
        """Forget fingerprints, the cache key and statistics."""
        self._fingerprint_manager = FingerprintManager()
        self._cache_state = None
        self._stats = OrchestrationStats()


def optimize_context(
    system_prompt: str,
    workspace_files: Mapping[str, str] | None,
    messages: Sequence[Mapping[str, Any] | Any],
    model_id: str,
    config: OrchestratorConfig | None = None,
) -> OrchestrationResult:
    """One-shot orchestration with a fresh orchestrator.

    Cache keys are not reused across calls; keep a ContextOrchestrator per
    conversation for that.
    """
    return ContextOrchestrator(config).orchestrate(system_prompt, workspace_files, messages, model_id)


def needs_optimization(
    system_prompt_tokens: int,
    messages_tokens: int,
    target_limit: int = DEFAULT_TARGET_CONTEXT_TOKENS,
) -> bool:
    """Whether the context exceeds the target and orchestration would change it."""
    return system_prompt_tokens + messages_tokens > target_limit
