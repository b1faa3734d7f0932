# Copyright (c) Microsoft. All rights reserved.

"""Content fingerprinting.

Fingerprints give every unit of context (message, system prompt, workspace
file) an identity used to:

- detect changes between turns
- find exact duplicates (e.g. repeated tool error dumps)
- derive the prompt cache key for static context
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ._tokenizer import Tokenizer, get_default_tokenizer
from ._types import ContextFingerprint, FingerprintedMessage

logger = logging.getLogger(__name__)

HASH_LENGTH = 16
CONTEXT_HASH_LENGTH = 8

SYSTEM_PROMPT_IMPORTANCE = 1.0
WORKSPACE_FILE_IMPORTANCE = 0.8
DEFAULT_IMPORTANCE = 0.5

# Tool results are usually the least important part of a conversation
ROLE_IMPORTANCE: dict[str, float] = {
    "system": 0.9,
    "user": 0.7,
    "assistant": 0.6,
    "tool": 0.3,
}


def compute_content_hash(content: str, length: int = HASH_LENGTH) -> str:
    """Compute a truncated SHA-256 hex digest.

    Args:
        content: The content to hash.
        length: Number of hex characters to keep (64 keeps the full digest).

    Returns:
        Hex digest prefix.
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:length]


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        # fromisoformat only accepts a "Z" suffix from Python 3.11
        if value.endswith(("Z", "z")):
            value = value[:-1] + "+00:00"
        try:
            return _coerce_datetime(datetime.fromisoformat(value))
        except ValueError:
            logger.debug("Ignoring unparseable created_at %r", value)
    return None


def create_fingerprint(
    content: str | None,
    *,
    importance: float = DEFAULT_IMPORTANCE,
    tags: set[str] | list[str] | None = None,
    existing_version: int = 0,
    created_at: datetime | None = None,
    tokenizer: Tokenizer | None = None,
) -> ContextFingerprint:
    """Create a fingerprint for a piece of text.

    Args:
        content: The text. ``None`` is treated as empty.
        importance: Priority score in [0, 1].
        tags: Classification tags.
        existing_version: Version of the fingerprint this one supersedes.
        created_at: Creation time, defaults to now.
        tokenizer: Tokenizer for the token estimate.

    Returns:
        A new ContextFingerprint with ``version = existing_version + 1``.
    """
    text = content or ""
    tokenizer = tokenizer or get_default_tokenizer()
    return ContextFingerprint(
        hash=compute_content_hash(text),
        version=existing_version + 1,
        created_at=created_at or datetime.now(timezone.utc),
        token_estimate=tokenizer.count_tokens(text),
        importance=importance,
        tags=set(tags or ()),
    )


def _message_field(message: Any, name: str, default: Any = None) -> Any:
    if isinstance(message, Mapping):
        return message.get(name, default)  # type: ignore[union-attr]
    return getattr(message, name, default)


def fingerprint_message(
    message: Mapping[str, Any] | Any,
    *,
    importance: float | None = None,
    created_at: datetime | None = None,
    tokenizer: Tokenizer | None = None,
) -> FingerprintedMessage:
    """Fingerprint a conversation message.

    Importance defaults by role (system 0.9, user 0.7, assistant 0.6, tool 0.3)
    unless given explicitly.

    Args:
        message: Mapping or object with ``id``, ``role``, ``content`` and an
            optional ``created_at`` (datetime, ISO string or epoch seconds).
        importance: Explicit importance overriding the role default.
        created_at: Creation time, used when the message carries none.
        tokenizer: Tokenizer for the token estimate.

    Returns:
        A FingerprintedMessage without compression overlay.
    """
    role = str(_message_field(message, "role", "user") or "user")
    content = _message_field(message, "content") or ""
    if not isinstance(content, str):
        content = str(content)
    message_created_at = _coerce_datetime(_message_field(message, "created_at")) or created_at

    if importance is None:
        importance = ROLE_IMPORTANCE.get(role, DEFAULT_IMPORTANCE)

    fingerprint = create_fingerprint(
        content,
        importance=importance,
        tags={role},
        created_at=message_created_at,
        tokenizer=tokenizer,
    )
    return FingerprintedMessage(
        id=str(_message_field(message, "id") or ""),
        role=role,
        content=content,
        fingerprint=fingerprint,
    )


@dataclass
class SystemContextFingerprint:
    """Fingerprints of the static context plus its combined identity.

    Attributes:
        system_prompt: Fingerprint of the system prompt.
        workspace_files: Map of file path to fingerprint.
        combined_hash: Order-independent identity of prompt and files.
    """

    system_prompt: ContextFingerprint
    workspace_files: dict[str, ContextFingerprint]
    combined_hash: str

    @property
    def token_estimate(self) -> int:
        return self.system_prompt.token_estimate + sum(fp.token_estimate for fp in self.workspace_files.values())


def fingerprint_system_context(
    system_prompt: str | None,
    workspace_files: Mapping[str, str | None] | None,
    *,
    tokenizer: Tokenizer | None = None,
    digest_length: int = HASH_LENGTH,
) -> SystemContextFingerprint:
    """Fingerprint the system prompt and workspace files.

    The combined hash digests the sorted list of component hashes, so it does
    not depend on the iteration order of ``workspace_files``.

    Args:
        system_prompt: System prompt text.
        workspace_files: Map of path to file content.
        tokenizer: Tokenizer for token estimates.
        digest_length: Hex length of the combined hash.

    Returns:
        A SystemContextFingerprint.
    """
    prompt_fp = create_fingerprint(
        system_prompt,
        importance=SYSTEM_PROMPT_IMPORTANCE,
        tags={"system-prompt"},
        tokenizer=tokenizer,
    )

    file_fps: dict[str, ContextFingerprint] = {}
    hashes = [prompt_fp.hash]
    for path, content in (workspace_files or {}).items():
        fp = create_fingerprint(
            content,
            importance=WORKSPACE_FILE_IMPORTANCE,
            tags={"workspace", path},
            tokenizer=tokenizer,
        )
        file_fps[path] = fp
        hashes.append(fp.hash)

    combined_hash = compute_content_hash(":".join(sorted(hashes)), digest_length)
    return SystemContextFingerprint(
        system_prompt=prompt_fp,
        workspace_files=file_fps,
        combined_hash=combined_hash,
    )


@dataclass(frozen=True)
class FingerprintComparison:
    """Difference between two fingerprints (b relative to a)."""

    changed: bool
    token_delta: int
    version_delta: int


def compare_fingerprints(a: ContextFingerprint | None, b: ContextFingerprint | None) -> FingerprintComparison:
    """Compare two fingerprints.

    A missing fingerprint on either side always counts as a change.
    """
    if a is None or b is None:
        return FingerprintComparison(
            changed=True,
            token_delta=(b.token_estimate if b else 0) - (a.token_estimate if a else 0),
            version_delta=(b.version if b else 0) - (a.version if a else 0),
        )
    return FingerprintComparison(
        changed=a.hash != b.hash,
        token_delta=b.token_estimate - a.token_estimate,
        version_delta=b.version - a.version,
    )


def find_duplicates(messages: list[FingerprintedMessage]) -> dict[str, list[FingerprintedMessage]]:
    """Group messages with identical content.

    Returns:
        Map of hash to messages, only for hashes shared by more than one
        message, in first-seen order.
    """
    groups: dict[str, list[FingerprintedMessage]] = {}
    for msg in messages:
        groups.setdefault(msg.fingerprint.hash, []).append(msg)
    return {h: msgs for h, msgs in groups.items() if len(msgs) > 1}


def create_cache_key(combined_hash: str, model_id: str, additional_context: str | None = None) -> str:
    """Build a prompt cache key for the static context.

    Args:
        combined_hash: Combined hash of system prompt and workspace files.
        model_id: Model the request targets.
        additional_context: Extra text folded into the key as a short digest.

    Returns:
        ``"{combined_hash}-{model_id}"`` with an optional ``-{digest}`` suffix.
    """
    components = [combined_hash, model_id]
    if additional_context:
        components.append(compute_content_hash(additional_context, CONTEXT_HASH_LENGTH))
    return "-".join(components)
