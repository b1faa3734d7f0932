# Copyright (c) Microsoft. All rights reserved.

"""Fingerprint storage for one conversation.

This module provides:
- FingerprintBackend protocol, a plain key-value capability
- In-memory implementation for single-process use
- FingerprintManager, which tracks message, system prompt and workspace
  fingerprints across turns and reports what changed

The manager is not thread-safe; use one instance per conversation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from datetime import datetime, timezone
from typing import Protocol

from ._fingerprint import compare_fingerprints
from ._types import ContextFingerprint, FingerprintedMessage, FingerprintStore

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_KEY = "system_prompt"
MESSAGE_PREFIX = "message:"
WORKSPACE_PREFIX = "workspace:"


class FingerprintBackend(Protocol):
    """Key-value storage for fingerprints.

    Implementations may be backed by memory, disk or a distributed cache.
    Keys are opaque strings chosen by FingerprintManager.
    """

    def get(self, key: str) -> ContextFingerprint | None:
        """Get the fingerprint stored under a key, or None."""
        ...

    def set(self, key: str, fingerprint: ContextFingerprint) -> None:
        """Store a fingerprint under a key, replacing any previous value."""
        ...

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        ...

    def keys(self) -> Iterator[str]:
        """Iterate over all stored keys."""
        ...

    def clear(self) -> None:
        """Remove every key."""
        ...


class InMemoryFingerprintBackend:
    """Dict-backed FingerprintBackend."""

    def __init__(self) -> None:
        self._data: dict[str, ContextFingerprint] = {}

    def get(self, key: str) -> ContextFingerprint | None:
        return self._data.get(key)

    def set(self, key: str, fingerprint: ContextFingerprint) -> None:
        self._data[key] = fingerprint

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> Iterator[str]:
        return iter(list(self._data))

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class FingerprintManager:
    """Tracks fingerprints for one conversation and reports changes.

    ``update_*`` methods return True when the stored fingerprint changed,
    which drives incremental cache invalidation.
    """

    def __init__(self, backend: FingerprintBackend | None = None) -> None:
        """Initialize the manager.

        Args:
            backend: Storage backend. Defaults to in-memory storage.
        """
        self._backend: FingerprintBackend = backend if backend is not None else InMemoryFingerprintBackend()
        self._last_update = datetime.now(timezone.utc)

    @property
    def last_update(self) -> datetime:
        return self._last_update

    def _update(self, key: str, fingerprint: ContextFingerprint) -> bool:
        existing = self._backend.get(key)
        changed = compare_fingerprints(existing, fingerprint).changed
        if changed:
            self._backend.set(key, fingerprint)
            self._last_update = datetime.now(timezone.utc)
            logger.debug("Fingerprint changed for %s (hash=%s)", key, fingerprint.hash)
        return changed

    def update_message(self, msg: FingerprintedMessage) -> bool:
        """Record a message fingerprint. Returns True if it changed."""
        return self._update(MESSAGE_PREFIX + msg.id, msg.fingerprint)

    def update_system_prompt(self, fingerprint: ContextFingerprint) -> bool:
        """Record the system prompt fingerprint. Returns True if it changed."""
        return self._update(SYSTEM_PROMPT_KEY, fingerprint)

    def update_workspace_file(self, path: str, fingerprint: ContextFingerprint) -> bool:
        """Record a workspace file fingerprint. Returns True if it changed."""
        return self._update(WORKSPACE_PREFIX + path, fingerprint)

    def remove_message(self, message_id: str) -> bool:
        """Forget a message. Returns True if it was known."""
        removed = self._backend.delete(MESSAGE_PREFIX + message_id)
        if removed:
            self._last_update = datetime.now(timezone.utc)
        return removed

    def prune_messages(self, keep_ids: Iterable[str]) -> list[str]:
        """Forget every message not in ``keep_ids``.

        Returns:
            Ids of the removed messages.
        """
        keep = set(keep_ids)
        stale = [message_id for message_id, _ in self._prefixed(MESSAGE_PREFIX) if message_id not in keep]
        for message_id in stale:
            self.remove_message(message_id)
        if stale:
            logger.debug("Pruned %d stale message fingerprints", len(stale))
        return stale

    def _prefixed(self, prefix: str) -> Iterator[tuple[str, ContextFingerprint]]:
        for key in self._backend.keys():
            if key.startswith(prefix):
                fp = self._backend.get(key)
                if fp is not None:
                    yield key[len(prefix) :], fp

    def get_total_token_estimate(self) -> int:
        """Sum of token estimates of everything tracked."""
        total = 0
        for key in self._backend.keys():
            fp = self._backend.get(key)
            if fp is not None:
                total += fp.token_estimate
        return total

    def get_messages_by_importance(self) -> list[str]:
        """Message ids sorted by importance, highest first (stable)."""
        entries = list(self._prefixed(MESSAGE_PREFIX))
        entries.sort(key=lambda item: item[1].importance, reverse=True)
        return [message_id for message_id, _ in entries]

    def message_count(self) -> int:
        return sum(1 for _ in self._prefixed(MESSAGE_PREFIX))

    def export_store(self) -> FingerprintStore:
        """Snapshot the tracked fingerprints for persistence."""
        return FingerprintStore(
            messages=dict(self._prefixed(MESSAGE_PREFIX)),
            system_prompt=self._backend.get(SYSTEM_PROMPT_KEY),
            workspace_files=dict(self._prefixed(WORKSPACE_PREFIX)),
            last_update=self._last_update,
        )

    def import_store(self, store: FingerprintStore) -> None:
        """Replace the tracked fingerprints with a persisted snapshot."""
        self._backend.clear()
        for message_id, fp in store.messages.items():
            self._backend.set(MESSAGE_PREFIX + message_id, fp)
        if store.system_prompt is not None:
            self._backend.set(SYSTEM_PROMPT_KEY, store.system_prompt)
        for path, fp in store.workspace_files.items():
            self._backend.set(WORKSPACE_PREFIX + path, fp)
        self._last_update = store.last_update
        logger.debug(
            "Imported fingerprint store: %d messages, %d workspace files",
            len(store.messages),
            len(store.workspace_files),
        )
