# Copyright (c) Microsoft. All rights reserved.

"""Tests for the context orchestrator.

These tests cover:
- Pass-through when the context is within target
- Progressive compression and importance/recency selection
- Decision traces and budgets
- Prompt cache key reuse, expiry and invalidation
- Statistics and tracing
"""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from context_intelligence import (
    CompressionConfig,
    ContextOrchestrator,
    DecisionType,
    OrchestratorConfig,
    needs_optimization,
    optimize_context,
)
from context_intelligence import _orchestrator as orchestrator_module

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _conversation(count: int, chars: int = 2000, role: str = "user") -> list[dict[str, Any]]:
    return [{"id": f"m{i}", "role": role, "content": f"{i:04d}" + "x" * (chars - 4)} for i in range(count)]


# ============================================================================
# Pass-through Tests
# ============================================================================


class TestWithinTarget:
    """Tests for contexts that already fit."""

    def test_unchanged_when_within_target(self) -> None:
        """Everything is sent as is, with no decisions."""
        messages = [
            {"id": "m1", "role": "user", "content": "Hi"},
            {"id": "m2", "role": "assistant", "content": "Hello! How can I help?"},
        ]

        result = ContextOrchestrator().orchestrate("You are helpful", {}, messages, "gpt-4o", now=NOW)

        assert not result.compression_applied
        assert [m.content for m in result.messages] == ["Hi", "Hello! How can I help?"]
        assert not any(m.is_compressed for m in result.messages)
        assert result.decisions == []
        assert result.cache_key is not None
        assert result.tokens_saved == 0

    def test_large_conversation_under_default_target(self) -> None:
        """20 messages of 2000 characters fit the default target untouched."""
        result = ContextOrchestrator().orchestrate("You are Bờm.", {}, _conversation(20), "gemini-pro", now=NOW)

        assert not result.compression_applied
        assert len(result.messages) == 20
        assert result.cache_key is not None
        assert result.actual_tokens == result.budget.content_tokens == 10_003

    def test_system_prompt_returned_verbatim(self) -> None:
        """The system prompt is never modified."""
        prompt = "You are a careful assistant.\n" * 50
        config = OrchestratorConfig(target_context_tokens=100)

        result = ContextOrchestrator(config).orchestrate(prompt, {}, _conversation(5), "gpt-4o", now=NOW)

        assert result.system_prompt == prompt

    def test_input_messages_not_mutated(self) -> None:
        """Orchestration leaves the caller's messages alone."""
        messages = _conversation(12)
        snapshot = copy.deepcopy(messages)
        config = OrchestratorConfig(target_context_tokens=1000)

        ContextOrchestrator(config).orchestrate("sys", {}, messages, "gpt-4o", now=NOW)

        assert messages == snapshot


# ============================================================================
# Compression and selection Tests
# ============================================================================


class TestOverTarget:
    """Tests for contexts that exceed the target."""

    def test_reduces_towards_target(self) -> None:
        """A tight target forces compression and moves usage towards it."""
        config = OrchestratorConfig(target_context_tokens=5000)

        result = ContextOrchestrator(config).orchestrate("You are Bờm.", {}, _conversation(20), "gemini-pro", now=NOW)

        original = result.budget.content_tokens
        assert result.compression_applied
        assert len(result.decisions_of(DecisionType.COMPRESS)) >= 1
        assert result.actual_tokens < original
        assert result.actual_tokens <= 5000
        assert abs(result.actual_tokens - 5000) < abs(original - 5000)
        assert result.tokens_saved == original - result.actual_tokens

    def test_compress_decision_reason(self) -> None:
        """The compress decision explains the overrun."""
        config = OrchestratorConfig(target_context_tokens=5000)

        result = ContextOrchestrator(config).orchestrate("You are Bờm.", {}, _conversation(20), "gemini-pro", now=NOW)

        decision = result.decisions_of(DecisionType.COMPRESS)[0]
        assert decision.reason == "Total tokens 10003 exceeds target 5000"
        assert decision.token_impact == 0

    def test_old_messages_are_compressed_not_dropped(self) -> None:
        """Aged messages lose fidelity first, before anything is excluded."""
        messages = _conversation(6)
        for i, msg in enumerate(messages):
            msg["created_at"] = NOW - timedelta(minutes=240 - i * 10)
        config = OrchestratorConfig(target_context_tokens=2000)

        result = ContextOrchestrator(config).orchestrate("", {}, messages, "gpt-4o", now=NOW)

        assert len(result.messages) == 6
        assert result.decisions_of(DecisionType.EXCLUDE) == []
        assert all(m.is_compressed for m in result.messages)
        assert result.actual_tokens <= 2000
        assert result.decisions_of(DecisionType.COMPRESS)[0].token_impact == 3000 - result.actual_tokens

    def test_recent_messages_always_kept(self) -> None:
        """The most recent messages by creation time survive selection."""
        ages = [5, 50, 1, 30, 90, 2, 70, 3, 60, 4]
        messages = _conversation(10)
        for msg, age in zip(messages, ages):
            msg["created_at"] = NOW - timedelta(minutes=age)
        config = OrchestratorConfig(target_context_tokens=1000)

        result = ContextOrchestrator(config).orchestrate("sys", {}, messages, "gpt-4o", now=NOW)

        kept = [m.id for m in result.messages]
        assert kept == ["m0", "m2", "m5", "m7", "m9"]
        excluded = result.decisions_of(DecisionType.EXCLUDE)
        assert sorted(d.message_id for d in excluded) == ["m1", "m3", "m4", "m6", "m8"]

    def test_importance_decides_older_messages(self) -> None:
        """Beyond the recent window, more important messages win."""
        messages = [
            {"id": "tool-out", "role": "tool", "content": "t" * 400},
            {"id": "question", "role": "user", "content": "q" * 400},
            {"id": "latest", "role": "assistant", "content": "a" * 400},
        ]
        config = OrchestratorConfig(target_context_tokens=250, compression=CompressionConfig(preserve_recent=1))

        result = ContextOrchestrator(config).orchestrate("", {}, messages, "gpt-4o", now=NOW)

        assert [m.id for m in result.messages] == ["question", "latest"]
        (excluded,) = result.decisions_of(DecisionType.EXCLUDE)
        assert excluded.message_id == "tool-out"
        assert excluded.token_impact == 100
        assert excluded.reason == "Low importance (0.30) and outside budget"

    def test_close_importance_prefers_recent(self) -> None:
        """Importance within 0.1 is a tie broken by recency."""
        messages = [
            {"id": "older-user", "role": "user", "content": "u" * 400},
            {"id": "newer-assistant", "role": "assistant", "content": "a" * 400},
            {"id": "latest", "role": "user", "content": "l" * 400},
        ]
        config = OrchestratorConfig(target_context_tokens=250, compression=CompressionConfig(preserve_recent=1))

        result = ContextOrchestrator(config).orchestrate("", {}, messages, "gpt-4o", now=NOW)

        assert [m.id for m in result.messages] == ["newer-assistant", "latest"]

    def test_static_context_larger_than_target(self) -> None:
        """Only the recent window is kept when the static context fills the target."""
        config = OrchestratorConfig(target_context_tokens=100, compression=CompressionConfig(preserve_recent=2))

        result = ContextOrchestrator(config).orchestrate("p" * 800, {}, _conversation(4, chars=400), "gpt-4o", now=NOW)

        assert [m.id for m in result.messages] == ["m2", "m3"]

    def test_importance_scoring_disabled(self) -> None:
        """Without importance scoring every message scores 0.5."""
        config = OrchestratorConfig(enable_importance_scoring=False)

        result = ContextOrchestrator(config).orchestrate(
            "", {}, [{"id": "t", "role": "tool", "content": "x"}], "gpt-4o", now=NOW
        )

        assert result.messages[0].fingerprint.importance == 0.5

    def test_dedup_decision(self) -> None:
        """With dedup enabled, duplicates are collapsed before compression."""
        error = "ERROR connection refused\n" * 40
        messages = [
            {"id": "m1", "role": "tool", "content": error},
            {"id": "m2", "role": "tool", "content": error},
            {"id": "m3", "role": "tool", "content": error},
        ]
        config = OrchestratorConfig(target_context_tokens=600, compression=CompressionConfig(enable_dedup=True))

        result = ContextOrchestrator(config).orchestrate("", {}, messages, "gpt-4o", now=NOW)

        first = result.decisions[0]
        assert first.type == DecisionType.COMPRESS
        assert first.reason == "Collapsed 2 duplicate messages"
        assert result.messages[1].effective_content == "[duplicate of message m1]"
        assert len(result.messages) == 3

    def test_dedup_survives_progressive_compression(self) -> None:
        """Aged duplicates keep their pointer and the trace matches what is sent."""
        error = "ERROR connection refused at host x\n" * 120
        messages = [
            {"id": "m1", "role": "tool", "content": error, "created_at": NOW - timedelta(minutes=20)},
            {"id": "m2", "role": "tool", "content": error, "created_at": NOW - timedelta(minutes=15)},
        ]
        config = OrchestratorConfig(target_context_tokens=1000, compression=CompressionConfig(enable_dedup=True))

        result = ContextOrchestrator(config).orchestrate("", {}, messages, "gpt-4o", now=NOW)

        dedup, progressive = result.decisions_of(DecisionType.COMPRESS)
        assert dedup.token_impact == 1043
        assert result.messages[1].effective_content == "[duplicate of message m1]"
        assert result.actual_tokens == 2100 - dedup.token_impact - progressive.token_impact
        assert result.decisions_of(DecisionType.EXCLUDE) == []


# ============================================================================
# Message normalization Tests
# ============================================================================


class TestMessageNormalization:
    """Tests for loosely shaped input messages."""

    def test_missing_fields(self) -> None:
        """Missing ids get positional ids and missing content counts as empty."""
        messages = [{"role": "user", "content": "hello"}, {"role": "assistant", "content": None}]

        result = ContextOrchestrator().orchestrate("", {}, messages, "unknown-model", now=NOW)

        assert [m.id for m in result.messages] == ["msg-0", "msg-1"]
        assert result.messages[1].content == ""
        assert result.messages[1].fingerprint.token_estimate == 0

    def test_budget_categories(self) -> None:
        """Budget splits tool output from the conversation and adds the reserve."""
        messages = [
            {"id": "m1", "role": "user", "content": "x" * 400},
            {"id": "m2", "role": "tool", "content": "y" * 800},
        ]

        result = ContextOrchestrator().orchestrate("z" * 40, {"a.md": "w" * 120}, messages, "gpt-4o", now=NOW)

        budget = result.budget
        assert budget.system_prompt == 10
        assert budget.workspace_files == 30
        assert budget.conversation_history == 100
        assert budget.tool_results == 200
        assert budget.reserve == 10_000
        assert budget.total == 10_340

    def test_tracks_fingerprints(self) -> None:
        """Orchestration records fingerprints in the manager."""
        orchestrator = ContextOrchestrator()

        orchestrator.orchestrate("sys", {"a.py": "code"}, _conversation(3), "gpt-4o", now=NOW)

        assert orchestrator.fingerprint_manager.message_count() == 3
        store = orchestrator.fingerprint_manager.export_store()
        assert store.system_prompt is not None
        assert list(store.workspace_files) == ["a.py"]

    def test_forgets_messages_no_longer_sent(self) -> None:
        """Fingerprints of messages missing from the next call are pruned."""
        orchestrator = ContextOrchestrator()

        orchestrator.orchestrate("sys", {}, _conversation(5), "gpt-4o", now=NOW)
        orchestrator.orchestrate("sys", {}, _conversation(5)[2:], "gpt-4o", now=NOW + timedelta(minutes=1))

        manager = orchestrator.fingerprint_manager
        assert manager.message_count() == 3
        assert sorted(manager.export_store().messages) == ["m2", "m3", "m4"]


# ============================================================================
# Cache key Tests
# ============================================================================


class TestCacheKeys:
    """Tests for prompt cache key reuse and invalidation."""

    def _orchestrate(self, orchestrator: ContextOrchestrator, now: datetime, **overrides: Any) -> str | None:
        kwargs: dict[str, Any] = {
            "system_prompt": "You are helpful",
            "workspace_files": {"README.md": "# Project"},
            "messages": _conversation(2, chars=100),
            "model_id": "claude-sonnet",
        }
        kwargs.update(overrides)
        return orchestrator.orchestrate(now=now, **kwargs).cache_key

    def test_reused_within_window(self) -> None:
        """The same static context reuses the key within the warmup window."""
        orchestrator = ContextOrchestrator()

        first = self._orchestrate(orchestrator, NOW)
        second = self._orchestrate(orchestrator, NOW + timedelta(minutes=30))

        assert first == second
        assert first is not None
        assert first.startswith(orchestrator.cache_state.combined_hash + "-claude-sonnet-")

    def test_messages_do_not_affect_key(self) -> None:
        """Conversation changes keep the key."""
        orchestrator = ContextOrchestrator()

        first = self._orchestrate(orchestrator, NOW)
        second = self._orchestrate(orchestrator, NOW + timedelta(minutes=1), messages=_conversation(7))

        assert first == second

    def test_new_key_after_window(self) -> None:
        """A key older than the warmup window is replaced."""
        orchestrator = ContextOrchestrator()

        first = self._orchestrate(orchestrator, NOW)
        second = self._orchestrate(orchestrator, NOW + timedelta(minutes=56))

        assert first != second

    @pytest.mark.parametrize(
        "override",
        [
            {"workspace_files": {"README.md": "# Project v2"}},
            {"system_prompt": "You are terse"},
            {"model_id": "gpt-4o"},
            {"cache_context": "tools-v2"},
        ],
    )
    def test_new_key_when_static_context_changes(self, override: dict[str, Any]) -> None:
        """Changing the static context, model or cache context mints a new key."""
        orchestrator = ContextOrchestrator()

        first = self._orchestrate(orchestrator, NOW)
        second = self._orchestrate(orchestrator, NOW + timedelta(minutes=1), **override)

        assert first != second

    def test_caching_disabled(self) -> None:
        """No key is produced when prompt caching is off."""
        orchestrator = ContextOrchestrator(OrchestratorConfig(enable_prompt_caching=False))

        assert self._orchestrate(orchestrator, NOW) is None
        assert orchestrator.cache_state is None

    def test_cache_state_threads_between_instances(self) -> None:
        """A persisted cache state lets a new orchestrator reuse the key."""
        first_orchestrator = ContextOrchestrator()
        first = self._orchestrate(first_orchestrator, NOW)

        second_orchestrator = ContextOrchestrator()
        second_orchestrator.cache_state = first_orchestrator.cache_state
        second = self._orchestrate(second_orchestrator, NOW + timedelta(minutes=10))

        assert first == second
        assert second_orchestrator.get_stats().cache_hits == 1

    def test_full_digest(self) -> None:
        """The static-context digest length follows the config."""
        orchestrator = ContextOrchestrator(OrchestratorConfig(cache_key_digest_length=64))

        self._orchestrate(orchestrator, NOW)

        assert orchestrator.cache_state is not None
        assert len(orchestrator.cache_state.combined_hash) == 64


# ============================================================================
# Stats and lifecycle Tests
# ============================================================================


class TestStats:
    """Tests for statistics and reset."""

    def test_stats_accumulate(self) -> None:
        """Counters follow each orchestration."""
        orchestrator = ContextOrchestrator(OrchestratorConfig(target_context_tokens=1000))

        orchestrator.orchestrate("sys", {}, _conversation(10), "gpt-4o", now=NOW)
        orchestrator.orchestrate("sys", {}, _conversation(10), "gpt-4o", now=NOW + timedelta(minutes=1))

        stats = orchestrator.get_stats()
        assert stats.total_orchestrations == 2
        assert stats.total_messages_processed == 20
        assert stats.total_compressions == 2
        assert stats.total_messages_excluded == 10
        assert stats.total_tokens_saved == 2 * 2500
        assert stats.cache_hit_rate == 0.5
        assert stats.to_dict()["cache_misses"] == 1

    def test_reset(self) -> None:
        """reset forgets the cache key, fingerprints and stats."""
        orchestrator = ContextOrchestrator()
        orchestrator.orchestrate("sys", {}, _conversation(3), "gpt-4o", now=NOW)

        orchestrator.reset()

        assert orchestrator.cache_state is None
        assert orchestrator.get_stats().total_orchestrations == 0
        assert orchestrator.fingerprint_manager.message_count() == 0


# ============================================================================
# Tracing Tests
# ============================================================================


class TestTracing:
    """Tests for the orchestration span."""

    def test_span_attributes(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Each orchestration records a span with token counts."""
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        monkeypatch.setattr(orchestrator_module, "_tracer", provider.get_tracer("test"))

        config = OrchestratorConfig(target_context_tokens=1000)
        ContextOrchestrator(config).orchestrate("sys", {}, _conversation(10), "gpt-4o", now=NOW)

        (span,) = exporter.get_finished_spans()
        assert span.name == "context_intelligence.orchestrate"
        assert span.attributes["context_intelligence.model_id"] == "gpt-4o"
        assert span.attributes["context_intelligence.message_count"] == 10
        assert span.attributes["context_intelligence.tokens_before"] == 5001
        assert span.attributes["context_intelligence.compression_applied"] is True
        assert span.attributes["context_intelligence.messages_excluded"] == 5


# ============================================================================
# Module function Tests
# ============================================================================


class TestModuleFunctions:
    """Tests for optimize_context and needs_optimization."""

    def test_optimize_context(self) -> None:
        """One-shot optimization uses a fresh orchestrator."""
        config = OrchestratorConfig(target_context_tokens=1000)

        result = optimize_context("sys", None, _conversation(10), "gpt-4o", config)

        assert result.compression_applied
        assert len(result.messages) == 5
        assert result.actual_tokens < result.budget.content_tokens

    def test_needs_optimization(self) -> None:
        """Optimization is needed only above the target."""
        assert not needs_optimization(1000, 4000, 5000)
        assert needs_optimization(1000, 4001, 5000)
        assert not needs_optimization(1000, 100_000)
        assert needs_optimization(50_000, 100_001)
