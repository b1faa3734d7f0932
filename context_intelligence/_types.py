# Copyright (c) Microsoft. All rights reserved.

"""Core data structures for the context intelligence engine.

Key principles:

1. Input messages are never mutated. A FingerprintedMessage carries compression
   as an overlay (``compressed_content``) next to the original ``content``.
2. Everything except FingerprintStore lives for a single orchestration call.
3. Enum values match the wire strings used in decision traces.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class CompressionMethod(str, Enum):
    """How a piece of content was compressed."""

    NONE = "none"
    DEDUP = "dedup"
    TRIM = "trim"
    SUMMARIZE = "summarize"
    SEMANTIC = "semantic"
    PROGRESSIVE = "progressive"


class LossLevel(str, Enum):
    """How much information a compression discarded."""

    LOSSLESS = "lossless"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DecisionType(str, Enum):
    """Kind of decision recorded in an orchestration trace."""

    INCLUDE = "include"
    EXCLUDE = "exclude"
    COMPRESS = "compress"
    SUMMARIZE = "summarize"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ContextFingerprint:
    """Content-derived identity for one unit of context.

    The hash is a truncated SHA-256 digest. It is an approximate identity
    suitable for change and duplicate detection, not a collision-proof one.

    Attributes:
        hash: Truncated hex digest of the content.
        version: Monotonic version number.
        created_at: When the content was created (UTC).
        token_estimate: Estimated token count of the content.
        importance: Priority score in [0, 1].
        tags: Classification tags (role, path, ...).
    """

    hash: str
    version: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    token_estimate: int = 0
    importance: float = 0.5
    tags: set[str] = field(default_factory=lambda: set())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "hash": self.hash,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "token_estimate": self.token_estimate,
            "importance": self.importance,
            "tags": sorted(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextFingerprint:
        """Deserialize from dictionary."""
        return cls(
            hash=data["hash"],
            version=data.get("version", 1),
            created_at=datetime.fromisoformat(data["created_at"]) if "created_at" in data else _utcnow(),
            token_estimate=data.get("token_estimate", 0),
            importance=data.get("importance", 0.5),
            tags=set(data.get("tags", [])),
        )


@dataclass
class FingerprintedMessage:
    """A conversation message with its fingerprint and optional compression overlay.

    Attributes:
        id: Message identifier, unique within a conversation.
        role: One of user, assistant, system, tool.
        content: Original message text. Never modified.
        fingerprint: Fingerprint of ``content``.
        compressed_content: Compressed text to send instead of ``content``.
        compression_ratio: compressed tokens / original tokens.
    """

    id: str
    role: str
    content: str
    fingerprint: ContextFingerprint
    compressed_content: str | None = None
    compression_ratio: float | None = None

    @property
    def effective_content(self) -> str:
        """Text that should be sent to the model."""
        if self.compressed_content is not None:
            return self.compressed_content
        return self.content

    @property
    def is_compressed(self) -> bool:
        return self.compressed_content is not None


@dataclass
class FingerprintStore:
    """Snapshot of every fingerprint known for one conversation.

    Attributes:
        messages: Map of message id to fingerprint.
        system_prompt: System prompt fingerprint, if any.
        workspace_files: Map of file path to fingerprint.
        last_update: When any fingerprint last changed.
    """

    messages: dict[str, ContextFingerprint] = field(default_factory=lambda: {})
    system_prompt: ContextFingerprint | None = None
    workspace_files: dict[str, ContextFingerprint] = field(default_factory=lambda: {})
    last_update: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "messages": {k: v.to_dict() for k, v in self.messages.items()},
            "system_prompt": self.system_prompt.to_dict() if self.system_prompt else None,
            "workspace_files": {k: v.to_dict() for k, v in self.workspace_files.items()},
            "last_update": self.last_update.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FingerprintStore:
        """Deserialize from dictionary."""
        system_prompt = data.get("system_prompt")
        return cls(
            messages={k: ContextFingerprint.from_dict(v) for k, v in data.get("messages", {}).items()},
            system_prompt=ContextFingerprint.from_dict(system_prompt) if system_prompt else None,
            workspace_files={k: ContextFingerprint.from_dict(v) for k, v in data.get("workspace_files", {}).items()},
            last_update=datetime.fromisoformat(data["last_update"]) if "last_update" in data else _utcnow(),
        )


@dataclass
class CompressionMetadata:
    """Details about what a compression kept and removed."""

    original_length: int
    compressed_length: int
    preserved_sections: list[str] = field(default_factory=lambda: [])
    removed_sections: list[str] = field(default_factory=lambda: [])
    summarized_sections: list[str] = field(default_factory=lambda: [])
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "original_length": self.original_length,
            "compressed_length": self.compressed_length,
            "preserved_sections": self.preserved_sections,
            "removed_sections": self.removed_sections,
            "summarized_sections": self.summarized_sections,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class CompressionResult:
    """Outcome of compressing a single message.

    Attributes:
        original_tokens: Token estimate before compression.
        compressed_tokens: Token estimate after compression.
        compression_ratio: compressed_tokens / original_tokens (1.0 when original is 0).
        method: Strategy that produced the content.
        loss_level: How lossy the strategy is.
        compressed_content: The resulting text.
        metadata: Section-level details.
    """

    original_tokens: int
    compressed_tokens: int
    compression_ratio: float
    method: CompressionMethod
    loss_level: LossLevel
    compressed_content: str
    metadata: CompressionMetadata

    @property
    def tokens_saved(self) -> int:
        return max(0, self.original_tokens - self.compressed_tokens)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "compression_ratio": self.compression_ratio,
            "method": self.method.value,
            "loss_level": self.loss_level.value,
            "compressed_content": self.compressed_content,
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class BatchCompressionResult:
    """Outcome of compressing a batch of messages against one budget."""

    messages: list[FingerprintedMessage]
    total_original_tokens: int
    total_compressed_tokens: int
    compression_stats: dict[str, CompressionResult] = field(default_factory=lambda: {})


@dataclass
class ContextBudget:
    """Token usage per context category.

    All counts are non-negative and additive: ``total`` is the sum of the
    other fields, ``reserve`` included.
    """

    system_prompt: int = 0
    workspace_files: int = 0
    conversation_history: int = 0
    tool_results: int = 0
    reserve: int = 0
    total: int = 0

    @property
    def content_tokens(self) -> int:
        """Tokens used by content, i.e. everything but the reserve."""
        return self.total - self.reserve

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "system_prompt": self.system_prompt,
            "workspace_files": self.workspace_files,
            "conversation_history": self.conversation_history,
            "tool_results": self.tool_results,
            "reserve": self.reserve,
            "total": self.total,
        }


@dataclass
class OrchestrationDecision:
    """One entry of the orchestration trace."""

    type: DecisionType
    reason: str
    token_impact: int
    message_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        data: dict[str, Any] = {
            "type": self.type.value,
            "reason": self.reason,
            "token_impact": self.token_impact,
        }
        if self.message_id is not None:
            data["message_id"] = self.message_id
        return data


@dataclass
class OrchestrationResult:
    """What to send to the model after orchestration.

    Callers must send ``messages`` (not their raw input) and forward
    ``cache_key`` to the provider's prompt cache parameter.

    Attributes:
        messages: Final messages, in original conversational order.
        system_prompt: The original system prompt, unmodified.
        budget: Token usage per category before orchestration.
        actual_tokens: Token usage of what will actually be sent.
        compression_applied: Whether the budget forced compression.
        cache_key: Prompt cache key, or None when caching is disabled.
        decisions: Ordered trace of compress/exclude decisions.
    """

    messages: list[FingerprintedMessage]
    system_prompt: str
    budget: ContextBudget
    actual_tokens: int
    compression_applied: bool
    cache_key: str | None
    decisions: list[OrchestrationDecision] = field(default_factory=lambda: [])

    @property
    def tokens_saved(self) -> int:
        return max(0, self.budget.content_tokens - self.actual_tokens)

    def decisions_of(self, decision_type: DecisionType) -> list[OrchestrationDecision]:
        """Return the decisions of one type, in trace order."""
        return [d for d in self.decisions if d.type == decision_type]
