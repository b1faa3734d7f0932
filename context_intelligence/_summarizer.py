# Copyright (c) Microsoft. All rights reserved.

"""Summarizer implementations for message compression.

The compressor delegates ordinary (non-tool, non-critical) messages to a
Summarizer. The default ``TrimSummarizer`` keeps the head and tail of the text;
``CallableSummarizer`` wraps any function, e.g. a call to a cheaper LLM.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from ._tokenizer import Tokenizer, get_default_tokenizer

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[...truncated...]\n\n"
HEAD_FRACTION = 0.4
TAIL_FRACTION = 0.4


@runtime_checkable
class Summarizer(Protocol):
    """Produces a shorter version of a message."""

    def summarize(self, content: str, target_tokens: int, *, role: str) -> str:
        """Summarize content to roughly ``target_tokens`` tokens.

        Args:
            content: The text to summarize.
            target_tokens: Token budget for the summary.
            role: Role of the message the content belongs to.

        Returns:
            The summary text.
        """
        ...


def trim_text(content: str, target_chars: int) -> str:
    """Keep the head and tail of ``content`` within ``target_chars``.

    Head and tail each get 40% of the budget around a truncation marker. When
    the marker itself does not fit, the text is cut to the budget instead.
    """
    if len(content) <= target_chars:
        return content
    head_chars = int(target_chars * HEAD_FRACTION)
    tail_chars = int(target_chars * TAIL_FRACTION)
    if head_chars + tail_chars + len(TRUNCATION_MARKER) > target_chars or tail_chars == 0:
        return content[:target_chars]
    return content[:head_chars] + TRUNCATION_MARKER + content[-tail_chars:]


class TrimSummarizer:
    """Default summarizer: head and tail trimming, no model call."""

    def __init__(self, tokenizer: Tokenizer | None = None) -> None:
        self._tokenizer = tokenizer or get_default_tokenizer()

    def summarize(self, content: str, target_tokens: int, *, role: str) -> str:
        return trim_text(content, self._tokenizer.chars_for_tokens(target_tokens))


class CallableSummarizer:
    """Summarizer backed by a plain function.

    Example:
        .. code-block:: python

            def llm_summary(content: str, target_tokens: int) -> str:
                return client.complete(f"Summarize in {target_tokens} tokens:\\n{content}")

            compressor = ContextCompressor(summarizer=CallableSummarizer(llm_summary))
    """

    def __init__(self, fn: Callable[[str, int], str], *, name: str | None = None) -> None:
        """Initialize the summarizer.

        Args:
            fn: Function taking (content, target_tokens) and returning the summary.
            name: Name used in log messages.
        """
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "callable")

    def summarize(self, content: str, target_tokens: int, *, role: str) -> str:
        logger.debug("Summarizing %s message with %s (target=%d tokens)", role, self.name, target_tokens)
        return self._fn(content, target_tokens)
