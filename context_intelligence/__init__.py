# Copyright (c) Microsoft. All rights reserved.

"""Context Intelligence Engine.

Decides what subset, and at what fidelity, of a conversation fits in a model's
context window, and mints a stable prompt cache key for the static context.

Example:
    .. code-block:: python

        from context_intelligence import ContextOrchestrator, OrchestratorConfig, optimize_context

        # One-shot
        result = optimize_context(system_prompt, workspace_files, messages, "claude-sonnet-4-5")
        print(f"Saved {result.tokens_saved} tokens")

        # One orchestrator per conversation keeps the prompt cache key warm
        orchestrator = ContextOrchestrator(OrchestratorConfig(target_context_tokens=120_000))
        result = orchestrator.orchestrate(system_prompt, workspace_files, messages, model_id)
        send(result.system_prompt, result.messages, cache_key=result.cache_key)
"""

from ._adapter import (
    ContextOptimizationResult,
    apply_context_intelligence,
    estimate_message_tokens,
    extract_text_content,
)
from ._cache import CacheKeyState, resolve_cache_key
from ._compressor import (
    ContextCompressor,
    compression_level_for_age,
    extract_json_keys,
    json_outline,
    summarize_json_structure,
)
from ._config import (
    DEFAULT_PROGRESSIVE_THRESHOLDS,
    CompressionConfig,
    OrchestratorConfig,
    ProgressiveThreshold,
)
from ._fingerprint import (
    ROLE_IMPORTANCE,
    FingerprintComparison,
    SystemContextFingerprint,
    compare_fingerprints,
    compute_content_hash,
    create_cache_key,
    create_fingerprint,
    find_duplicates,
    fingerprint_message,
    fingerprint_system_context,
)
from ._metrics import OrchestrationStats
from ._orchestrator import ContextOrchestrator, needs_optimization, optimize_context
from ._store import FingerprintBackend, FingerprintManager, InMemoryFingerprintBackend
from ._summarizer import CallableSummarizer, Summarizer, TrimSummarizer, trim_text
from ._tokenizer import (
    CharacterTokenizer,
    TiktokenTokenizer,
    Tokenizer,
    estimate_tokens,
    get_default_tokenizer,
    get_tokenizer,
)
from ._types import (
    BatchCompressionResult,
    CompressionMetadata,
    CompressionMethod,
    CompressionResult,
    ContextBudget,
    ContextFingerprint,
    DecisionType,
    FingerprintedMessage,
    FingerprintStore,
    LossLevel,
    OrchestrationDecision,
    OrchestrationResult,
)

__all__ = [
    "DEFAULT_PROGRESSIVE_THRESHOLDS",
    "ROLE_IMPORTANCE",
    "BatchCompressionResult",
    "CacheKeyState",
    "CallableSummarizer",
    "CharacterTokenizer",
    "CompressionConfig",
    "CompressionMetadata",
    "CompressionMethod",
    "CompressionResult",
    "ContextBudget",
    "ContextCompressor",
    "ContextFingerprint",
    "ContextOptimizationResult",
    "ContextOrchestrator",
    "DecisionType",
    "FingerprintBackend",
    "FingerprintComparison",
    "FingerprintManager",
    "FingerprintStore",
    "FingerprintedMessage",
    "InMemoryFingerprintBackend",
    "LossLevel",
    "OrchestrationDecision",
    "OrchestrationResult",
    "OrchestrationStats",
    "OrchestratorConfig",
    "ProgressiveThreshold",
    "Summarizer",
    "SystemContextFingerprint",
    "TiktokenTokenizer",
    "Tokenizer",
    "TrimSummarizer",
    # Utilities
    "apply_context_intelligence",
    "compare_fingerprints",
    "compression_level_for_age",
    "compute_content_hash",
    "create_cache_key",
    "create_fingerprint",
    "estimate_message_tokens",
    "estimate_tokens",
    "extract_json_keys",
    "extract_text_content",
    "find_duplicates",
    "fingerprint_message",
    "fingerprint_system_context",
    "get_default_tokenizer",
    "get_tokenizer",
    "json_outline",
    "needs_optimization",
    "optimize_context",
    "resolve_cache_key",
    "summarize_json_structure",
    "trim_text",
]
