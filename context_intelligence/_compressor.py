# Copyright (c) Microsoft. All rights reserved.

"""Message compression.

Strategy ladder for a single message, chosen by importance, role and structure:

1. None - already within the target
2. Trim - high-importance messages keep their head and tail
3. Semantic - tool results keep their structure (JSON outline, log head/tail)
4. Summarize - everything else goes through the injected Summarizer

Batch compression splits a token budget by importance. Progressive compression
degrades fidelity with message age instead of dropping messages.

Compression never increases a message's token count: a strategy that
overshoots is replaced by a hard truncation.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from ._config import DEFAULT_PROGRESSIVE_THRESHOLDS, CompressionConfig, ProgressiveThreshold, normalize_thresholds
from ._fingerprint import find_duplicates
from ._summarizer import Summarizer, TrimSummarizer, trim_text
from ._tokenizer import Tokenizer, get_default_tokenizer
from ._types import (
    BatchCompressionResult,
    CompressionMetadata,
    CompressionMethod,
    CompressionResult,
    FingerprintedMessage,
    LossLevel,
)

logger = logging.getLogger(__name__)

MIN_ALLOCATION_TOKENS = 100
LEVEL_RATIO_STEP = 0.2

JSON_MAX_DEPTH = 2
JSON_MAX_ARRAY_ITEMS = 3
JSON_MAX_OBJECT_KEYS = 5
JSON_MAX_STRING_LENGTH = 100
JSON_OUTLINE_MAX_KEYS = 10

LOG_HEAD_LINES = 10
LOG_TAIL_LINES = 10
LOG_MIN_LINES = 10


def summarize_json_structure(obj: Any, max_depth: int = JSON_MAX_DEPTH, depth: int = 0) -> Any:
    """Reduce a parsed JSON value to its shape.

    Arrays longer than 3 keep their first and last item around a count marker,
    objects keep their first 5 keys, long strings are cut at 100 characters,
    and containers below ``max_depth`` collapse to a size description.
    """
    if isinstance(obj, str):
        if len(obj) > JSON_MAX_STRING_LENGTH:
            return obj[:JSON_MAX_STRING_LENGTH] + "..."
        return obj

    if depth >= max_depth:
        if isinstance(obj, list):
            return f"[Array({len(obj)})]"
        if isinstance(obj, dict):
            return f"{{Object({len(obj)} keys)}}"
        return obj

    if isinstance(obj, list):
        if len(obj) <= JSON_MAX_ARRAY_ITEMS:
            return [summarize_json_structure(item, max_depth, depth + 1) for item in obj]
        return [
            summarize_json_structure(obj[0], max_depth, depth + 1),
            f"... {len(obj) - 2} more items ...",
            summarize_json_structure(obj[-1], max_depth, depth + 1),
        ]

    if isinstance(obj, dict):
        keys = list(obj)
        result: dict[str, Any] = {
            key: summarize_json_structure(obj[key], max_depth, depth + 1) for key in keys[:JSON_MAX_OBJECT_KEYS]
        }
        if len(keys) > JSON_MAX_OBJECT_KEYS:
            result["..."] = f"{len(keys) - JSON_MAX_OBJECT_KEYS} more keys"
        return result

    return obj


def extract_json_keys(obj: Any, prefix: str = "") -> list[str]:
    """List every object key as a dotted path, depth first."""
    keys: list[str] = []
    if isinstance(obj, dict):
        for key, value in obj.items():
            full_key = f"{prefix}.{key}" if prefix else str(key)
            keys.append(full_key)
            keys.extend(extract_json_keys(value, full_key))
    return keys


def json_outline(obj: Any, target_chars: int) -> str:
    """One-line bracket summary of a JSON value, shortened to fit if possible."""
    if isinstance(obj, list):
        outline = f"[JSON array, {len(obj)} items]"
        return outline if len(outline) <= target_chars else f"[{len(obj)} items]"

    keys = extract_json_keys(obj)
    for count in range(min(len(keys), JSON_OUTLINE_MAX_KEYS), 0, -1):
        suffix = ", ..." if count < len(keys) else ""
        outline = f"[JSON object, {len(keys)} keys: {', '.join(keys[:count])}{suffix}]"
        if len(outline) <= target_chars:
            return outline
    return f"[{len(keys)} keys]"


def compression_level_for_age(age_minutes: float, thresholds: list[ProgressiveThreshold]) -> int:
    """Compression level for a message of the given age.

    ``thresholds`` must be sorted by minutes, ascending. Ages beyond every
    threshold get the level of the last one.
    """
    for threshold in thresholds:
        if age_minutes < threshold.minutes:
            return threshold.compression_level
    return thresholds[-1].compression_level if thresholds else 0


class ContextCompressor:
    """Compresses messages towards token targets.

    Attributes:
        config: Compression settings.
    """

    def __init__(
        self,
        config: CompressionConfig | None = None,
        *,
        summarizer: Summarizer | None = None,
        tokenizer: Tokenizer | None = None,
    ) -> None:
        """Initialize the compressor.

        Args:
            config: Compression settings, defaults if omitted.
            summarizer: Summarizer for ordinary messages. Defaults to TrimSummarizer.
            tokenizer: Tokenizer for compressed token counts.
        """
        self.config = config or CompressionConfig()
        self._tokenizer = tokenizer or get_default_tokenizer()
        self._summarizer: Summarizer = summarizer or TrimSummarizer(self._tokenizer)

    @property
    def tokenizer(self) -> Tokenizer:
        return self._tokenizer

    # ------------------------------------------------------------------
    # Single message
    # ------------------------------------------------------------------

    def compress_message(self, message: FingerprintedMessage, target_tokens: int | None = None) -> CompressionResult:
        """Compress one message towards a token target.

        Args:
            message: The message to compress.
            target_tokens: Token target. Defaults to ``target_compression_ratio``
                of the message's tokens.

        Returns:
            The compression result. ``compressed_tokens`` never exceeds
            ``original_tokens``.
        """
        original_tokens = message.fingerprint.token_estimate
        if target_tokens is None:
            target_tokens = math.floor(original_tokens * self.config.target_compression_ratio)
        target_tokens = max(0, target_tokens)

        if original_tokens <= target_tokens:
            return self._no_compression(message)

        if message.fingerprint.importance >= self.config.preserve_importance:
            result = self._trim(message, target_tokens)
        elif message.role == "tool" and self.config.enable_semantic:
            result = self.compress_tool_result(message, target_tokens)
        elif self.config.enable_summarization:
            result = self._summarize(message, target_tokens)
        else:
            result = self._trim(message, target_tokens)

        if result.compressed_tokens > original_tokens:
            logger.debug(
                "%s compression of %s grew the message (%d > %d tokens), truncating",
                result.method.value,
                message.id,
                result.compressed_tokens,
                original_tokens,
            )
            return self._truncate(message, target_tokens)
        return result

    def compress_tool_result(self, message: FingerprintedMessage, target_tokens: int) -> CompressionResult:
        """Structure-aware compression for tool output.

        JSON keeps its shape, long logs keep their first and last lines, and
        anything else is trimmed.
        """
        content = message.content
        target_chars = self._tokenizer.chars_for_tokens(target_tokens)

        stripped = content.strip()
        compressed: str | None = None
        if stripped.startswith(("{", "[")):
            compressed = self._compress_json(stripped, target_chars)
        if compressed is None and content.count("\n") + 1 > LOG_MIN_LINES:
            compressed = self._compress_logs(content, target_chars)
        if compressed is None:
            return self._trim(message, target_tokens)

        return self._build_result(
            message,
            compressed,
            method=CompressionMethod.SEMANTIC,
            loss_level=LossLevel.MEDIUM,
            preserved=["structure"],
            removed=["data-details"],
        )

    def _compress_json(self, text: str, target_chars: int) -> str | None:
        try:
            parsed = json.loads(text)
        except ValueError:
            logger.debug("Tool result looks like JSON but does not parse, using text compression")
            return None
        if not isinstance(parsed, (dict, list)):
            return None

        summarized = json.dumps(summarize_json_structure(parsed), separators=(",", ":"), ensure_ascii=False)
        if len(summarized) <= target_chars:
            return summarized
        return json_outline(parsed, target_chars)

    def _compress_logs(self, content: str, target_chars: int) -> str:
        lines = content.split("\n")
        if len(lines) <= LOG_HEAD_LINES + LOG_TAIL_LINES:
            return content[:target_chars]

        omitted = len(lines) - LOG_HEAD_LINES - LOG_TAIL_LINES
        head = "\n".join(lines[:LOG_HEAD_LINES])
        tail = "\n".join(lines[-LOG_TAIL_LINES:])
        return (head + f"\n\n[... {omitted} lines omitted ...]\n\n" + tail)[:target_chars]

    def _summarize(self, message: FingerprintedMessage, target_tokens: int) -> CompressionResult:
        try:
            summary = self._summarizer.summarize(message.content, target_tokens, role=message.role)
        except Exception:
            logger.warning(
                "Summarizer %s failed for message %s, falling back to trim",
                type(self._summarizer).__name__,
                message.id,
                exc_info=True,
            )
            return self._trim(message, target_tokens)

        return self._build_result(
            message,
            summary,
            method=CompressionMethod.SUMMARIZE,
            loss_level=LossLevel.MEDIUM,
            summarized=["content"],
        )

    def _trim(self, message: FingerprintedMessage, target_tokens: int) -> CompressionResult:
        trimmed = trim_text(message.content, self._tokenizer.chars_for_tokens(target_tokens))
        return self._build_result(
            message,
            trimmed,
            method=CompressionMethod.TRIM,
            loss_level=LossLevel.LOW,
            preserved=["head", "tail"],
            removed=["middle"],
        )

    def _truncate(self, message: FingerprintedMessage, target_tokens: int) -> CompressionResult:
        truncated = message.content[: self._tokenizer.chars_for_tokens(target_tokens)]
        return self._build_result(
            message,
            truncated,
            method=CompressionMethod.TRIM,
            loss_level=LossLevel.HIGH,
            preserved=["head"],
            removed=["tail"],
        )

    def _no_compression(self, message: FingerprintedMessage) -> CompressionResult:
        tokens = message.fingerprint.token_estimate
        return CompressionResult(
            original_tokens=tokens,
            compressed_tokens=tokens,
            compression_ratio=1.0,
            method=CompressionMethod.NONE,
            loss_level=LossLevel.LOSSLESS,
            compressed_content=message.content,
            metadata=CompressionMetadata(
                original_length=len(message.content),
                compressed_length=len(message.content),
                preserved_sections=["all"],
            ),
        )

    def _build_result(
        self,
        message: FingerprintedMessage,
        compressed: str,
        *,
        method: CompressionMethod,
        loss_level: LossLevel,
        preserved: list[str] | None = None,
        removed: list[str] | None = None,
        summarized: list[str] | None = None,
    ) -> CompressionResult:
        original_tokens = message.fingerprint.token_estimate
        compressed_tokens = self._tokenizer.count_tokens(compressed)
        return CompressionResult(
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            compression_ratio=compressed_tokens / original_tokens if original_tokens else 1.0,
            method=method,
            loss_level=loss_level,
            compressed_content=compressed,
            metadata=CompressionMetadata(
                original_length=len(message.content),
                compressed_length=len(compressed),
                preserved_sections=preserved or [],
                removed_sections=removed or [],
                summarized_sections=summarized or [],
            ),
        )

    @staticmethod
    def _apply(message: FingerprintedMessage, result: CompressionResult) -> FingerprintedMessage:
        if result.method == CompressionMethod.NONE:
            return message
        return replace(
            message,
            compressed_content=result.compressed_content,
            compression_ratio=result.compression_ratio,
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def compress_batch(
        self,
        messages: list[FingerprintedMessage],
        token_budget: int | None = None,
    ) -> BatchCompressionResult:
        """Compress messages so their total fits a token budget.

        Each message gets a share of the budget proportional to its importance,
        with a floor of 100 tokens.

        Args:
            messages: Messages to compress.
            token_budget: Total budget. Defaults to ``max_token_budget``.

        Returns:
            Compressed messages (original order) with per-message results.
        """
        budget = self.config.max_token_budget if token_budget is None else token_budget
        total_original = sum(msg.fingerprint.token_estimate for msg in messages)

        if total_original <= budget:
            return BatchCompressionResult(
                messages=list(messages),
                total_original_tokens=total_original,
                total_compressed_tokens=total_original,
            )

        allocation = self._allocate_token_budget(messages, budget)
        compressed: list[FingerprintedMessage] = []
        stats: dict[str, CompressionResult] = {}
        total_compressed = 0

        for msg in messages:
            allocated = allocation.get(msg.id, msg.fingerprint.token_estimate)
            if msg.fingerprint.token_estimate <= allocated:
                result = self._no_compression(msg)
            else:
                result = self.compress_message(msg, allocated)
            compressed.append(self._apply(msg, result))
            stats[msg.id] = result
            total_compressed += result.compressed_tokens

        logger.debug(
            "Batch compression: %d -> %d tokens (budget %d, %d messages)",
            total_original,
            total_compressed,
            budget,
            len(messages),
        )
        return BatchCompressionResult(
            messages=compressed,
            total_original_tokens=total_original,
            total_compressed_tokens=total_compressed,
            compression_stats=stats,
        )

    def _allocate_token_budget(self, messages: list[FingerprintedMessage], total_budget: int) -> dict[str, int]:
        total_importance = sum(msg.fingerprint.importance for msg in messages)
        if total_importance <= 0:
            return {msg.id: MIN_ALLOCATION_TOKENS for msg in messages}

        allocation: dict[str, int] = {}
        for msg in messages:
            share = msg.fingerprint.importance / total_importance
            allocation[msg.id] = max(math.floor(total_budget * share), MIN_ALLOCATION_TOKENS)
        return allocation

    def progressive_compress(
        self,
        messages: list[FingerprintedMessage],
        age_thresholds: list[ProgressiveThreshold] | tuple[ProgressiveThreshold, ...] | None = None,
        *,
        now: datetime | None = None,
    ) -> list[FingerprintedMessage]:
        """Compress messages according to their age.

        Each compression level keeps 20% fewer tokens (level 1 keeps 80%,
        level 4 keeps 20%). Level 0 messages are returned untouched, and so
        are messages whose existing overlay (e.g. a dedup pointer) is already
        smaller than the new compression would be.

        Args:
            messages: Messages to compress.
            age_thresholds: Age ladder. Defaults to the standard 5/30/60/180 minute ladder.
            now: Reference time for ages. Defaults to the current time.

        Returns:
            Messages in the same order, older ones with compression overlays.
        """
        thresholds = normalize_thresholds(
            DEFAULT_PROGRESSIVE_THRESHOLDS if age_thresholds is None else age_thresholds
        )
        now = now or datetime.now(timezone.utc)
        result: list[FingerprintedMessage] = []

        for msg in messages:
            age_minutes = (now - msg.fingerprint.created_at).total_seconds() / 60
            level = compression_level_for_age(age_minutes, thresholds)
            if level == 0:
                result.append(msg)
                continue

            target_ratio = min(max(1 - level * LEVEL_RATIO_STEP, 0.0), 1.0)
            target_tokens = math.floor(msg.fingerprint.token_estimate * target_ratio)
            compressed = self.compress_message(msg, target_tokens)
            if (
                msg.compressed_content is not None
                and self._tokenizer.count_tokens(msg.compressed_content) <= compressed.compressed_tokens
            ):
                result.append(msg)
                continue
            result.append(self._apply(msg, compressed))

        return result

    def deduplicate(self, messages: list[FingerprintedMessage]) -> BatchCompressionResult:
        """Replace later exact duplicates with a pointer to the first occurrence.

        A duplicate is only replaced when the pointer is shorter than the
        content it stands for.
        """
        stats: dict[str, CompressionResult] = {}
        for group in find_duplicates(messages).values():
            first = group[0]
            for dup in group[1:]:
                pointer = f"[duplicate of message {first.id}]"
                result = self._build_result(
                    dup,
                    pointer,
                    method=CompressionMethod.DEDUP,
                    loss_level=LossLevel.LOW,
                    removed=["duplicate"],
                )
                if result.compressed_tokens < result.original_tokens:
                    stats[dup.id] = result

        deduped = [self._apply(msg, stats[msg.id]) if msg.id in stats else msg for msg in messages]
        total_original = sum(msg.fingerprint.token_estimate for msg in messages)
        saved = sum(r.tokens_saved for r in stats.values())
        return BatchCompressionResult(
            messages=deduped,
            total_original_tokens=total_original,
            total_compressed_tokens=total_original - saved,
            compression_stats=stats,
        )
