# Copyright (c) Microsoft. All rights reserved.

"""Adapter between chat message dicts and the orchestrator.

Chat messages are dicts with a ``role`` and a ``content`` that is either a
string or a list of typed parts (``{"type": "text", "text": ...}``, image
parts, tool calls, ...). Only text takes part in orchestration; everything else
is passed through untouched, except that an assistant ``tool_calls`` message is
dropped together with its ``tool_call_id`` responses when any of them is
excluded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, cast

from ._config import OrchestratorConfig
from ._orchestrator import ContextOrchestrator, needs_optimization
from ._tokenizer import estimate_tokens
from ._types import DecisionType, OrchestrationResult

logger = logging.getLogger(__name__)

# Images have variable token cost based on resolution; use a flat estimate
IMAGE_TOKEN_ESTIMATE = 1000
IMAGE_PART_TYPES = frozenset({"image", "image_url"})


@dataclass
class ContextOptimizationResult:
    """Result of optimizing a list of chat messages.

    Attributes:
        messages: Messages to send, with compressed text applied and excluded
            messages removed.
        applied: Whether compression or exclusion was applied.
        original_tokens: Estimated tokens before optimization.
        optimized_tokens: Estimated tokens after optimization.
        saved_tokens: original_tokens - optimized_tokens.
        savings_percent: Saved tokens as a percentage of the original.
        decisions: Orchestration decisions as plain dicts.
        cache_key: Prompt cache key, when orchestration ran with caching.
    """

    messages: list[dict[str, Any]]
    applied: bool
    original_tokens: int
    optimized_tokens: int
    saved_tokens: int = 0
    savings_percent: float = 0.0
    decisions: list[dict[str, Any]] = field(default_factory=lambda: [])
    cache_key: str | None = None


def extract_text_content(content: Any) -> str:
    """Text of a message content field, joining text parts with newlines."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts: list[str] = []
        for part in cast("list[Any]", content):
            if isinstance(part, dict):
                part_dict = cast("dict[str, Any]", part)
                if part_dict.get("type") == "text" and isinstance(part_dict.get("text"), str):
                    texts.append(part_dict["text"])
            elif isinstance(part, str):
                texts.append(part)
        return "\n".join(texts)
    return ""


def estimate_message_tokens(message: dict[str, Any]) -> int:
    """Estimate the tokens of one chat message."""
    content = message.get("content")
    if isinstance(content, str):
        return estimate_tokens(content)
    if isinstance(content, list):
        total = 0
        for part in cast("list[Any]", content):
            if isinstance(part, dict):
                part_dict = cast("dict[str, Any]", part)
                part_type = part_dict.get("type")
                if part_type == "text" and isinstance(part_dict.get("text"), str):
                    total += estimate_tokens(part_dict["text"])
                elif part_type in IMAGE_PART_TYPES:
                    total += IMAGE_TOKEN_ESTIMATE
            elif isinstance(part, str):
                total += estimate_tokens(part)
        return total
    return 0


def _replace_text(message: dict[str, Any], text: str) -> dict[str, Any]:
    content = message.get("content")
    if isinstance(content, str):
        return {**message, "content": text}
    if isinstance(content, list):
        new_content: list[Any] = []
        replaced = False
        for part in cast("list[Any]", content):
            if isinstance(part, dict) and cast("dict[str, Any]", part).get("type") == "text":
                # All text parts were joined for orchestration; the first carries the result
                if not replaced:
                    new_content.append({**cast("dict[str, Any]", part), "text": text})
                    replaced = True
                continue
            new_content.append(part)
        return {**message, "content": new_content}
    return message


def _tool_call_groups(messages: list[dict[str, Any]]) -> list[list[int]]:
    """Index groups of an assistant tool-call message and its tool responses."""
    call_owner: dict[str, int] = {}
    groups: dict[int, list[int]] = {}
    for index, message in enumerate(messages):
        tool_calls = message.get("tool_calls")
        if isinstance(tool_calls, list):
            for call in cast("list[Any]", tool_calls):
                call_id = cast("dict[str, Any]", call).get("id") if isinstance(call, dict) else None
                if call_id:
                    call_owner[str(call_id)] = index
                    groups.setdefault(index, [index])
        call_id = message.get("tool_call_id")
        if call_id is not None and str(call_id) in call_owner:
            groups[call_owner[str(call_id)]].append(index)
    return list(groups.values())


def _apply_result(
    messages: list[dict[str, Any]],
    result: OrchestrationResult,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Rebuild the message list from an orchestration result.

    A tool-call message and its responses are kept or dropped together, since
    providers reject a call without its response and vice versa.

    Returns:
        Tuple of (messages to send, decisions for pair-completing exclusions).
    """
    kept = {msg.id: msg for msg in result.messages}
    rebuilt: list[dict[str, Any] | None] = []
    for index, message in enumerate(messages):
        if not extract_text_content(message.get("content")):
            rebuilt.append(message)
            continue
        orchestrated = kept.get(f"msg-{index}")
        if orchestrated is None:
            rebuilt.append(None)
        elif orchestrated.compressed_content is not None and orchestrated.compressed_content != orchestrated.content:
            rebuilt.append(_replace_text(message, orchestrated.compressed_content))
        else:
            rebuilt.append(message)

    decisions: list[dict[str, Any]] = []
    for group in _tool_call_groups(messages):
        if all(rebuilt[index] is not None for index in group):
            continue
        for index in group:
            remaining = rebuilt[index]
            if remaining is None:
                continue
            decisions.append(
                {
                    "type": DecisionType.EXCLUDE.value,
                    "reason": "Tool call pair incomplete after selection",
                    "token_impact": estimate_message_tokens(remaining),
                    "message_id": f"msg-{index}",
                }
            )
            rebuilt[index] = None
        logger.debug("Dropped tool call group %s to keep calls and responses paired", group)

    return [message for message in rebuilt if message is not None], decisions


def apply_context_intelligence(
    messages: list[dict[str, Any]],
    system_prompt: str,
    model_id: str,
    *,
    config: OrchestratorConfig | None = None,
    enabled: bool = True,
    orchestrator: ContextOrchestrator | None = None,
) -> ContextOptimizationResult:
    """Optimize chat messages for a model call.

    Args:
        messages: Chat messages, oldest first. Not modified.
        system_prompt: System prompt for the call.
        model_id: Model the call targets.
        config: Orchestrator settings for a fresh orchestrator.
        enabled: When False, messages are returned unchanged.
        orchestrator: Orchestrator to reuse across calls (keeps cache keys warm).
            Takes precedence over ``config``.

    Returns:
        The optimization result.
    """
    system_tokens = estimate_tokens(system_prompt)
    message_tokens = sum(estimate_message_tokens(m) for m in messages)
    total_original = system_tokens + message_tokens

    if orchestrator is None:
        orchestrator = ContextOrchestrator(config)
    target = orchestrator.config.target_context_tokens

    if not enabled or not needs_optimization(system_tokens, message_tokens, target):
        if enabled:
            logger.debug("No optimization needed (%d tokens <= %d target)", total_original, target)
        return ContextOptimizationResult(
            messages=messages,
            applied=False,
            original_tokens=total_original,
            optimized_tokens=total_original,
        )

    logger.debug("Optimizing context (%d tokens > %d target)", total_original, target)

    orchestration_input: list[dict[str, Any]] = []
    for index, message in enumerate(messages):
        text = extract_text_content(message.get("content"))
        if text:
            orchestration_input.append({"id": f"msg-{index}", "role": message.get("role", "user"), "content": text})
    result = orchestrator.orchestrate(system_prompt, {}, orchestration_input, model_id)
    optimized_messages, pairing_decisions = _apply_result(messages, result)

    optimized_tokens = system_tokens + sum(estimate_message_tokens(m) for m in optimized_messages)
    saved_tokens = total_original - optimized_tokens
    savings_percent = (saved_tokens / total_original) * 100 if total_original > 0 else 0.0

    logger.debug(
        "Optimized %d -> %d tokens (saved %d, %.1f%%)",
        total_original,
        optimized_tokens,
        saved_tokens,
        savings_percent,
    )

    return ContextOptimizationResult(
        messages=optimized_messages,
        applied=result.compression_applied,
        original_tokens=total_original,
        optimized_tokens=optimized_tokens,
        saved_tokens=saved_tokens,
        savings_percent=savings_percent,
        decisions=[d.to_dict() for d in result.decisions] + pairing_decisions,
        cache_key=result.cache_key,
    )
