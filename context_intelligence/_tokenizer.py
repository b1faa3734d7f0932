# Copyright (c) Microsoft. All rights reserved.

"""Token estimation for context budgeting.

Every token count in the engine goes through a single ``Tokenizer``. The
default ``CharacterTokenizer`` uses the 4-characters-per-token heuristic with
ceiling rounding. ``TiktokenTokenizer`` gives exact counts for OpenAI-style
encodings and can be swapped in without changing any other contract.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DEFAULT_CHARS_PER_TOKEN = 4.0

# Model to encoding mapping for tiktoken
MODEL_ENCODING_MAP: dict[str, str] = {
    "gpt-4": "cl100k_base",
    "gpt-4-turbo": "cl100k_base",
    "gpt-4o": "o200k_base",
    "gpt-4o-mini": "o200k_base",
    "gpt-3.5-turbo": "cl100k_base",
    "o1": "o200k_base",
    "o1-mini": "o200k_base",
    "o1-preview": "o200k_base",
}

# Default encoding for unknown models
DEFAULT_ENCODING = "cl100k_base"


@runtime_checkable
class Tokenizer(Protocol):
    """Counts tokens in a piece of text."""

    def count_tokens(self, text: str | None) -> int:
        """Count tokens in raw text.

        Args:
            text: The text to count. ``None`` counts as empty.

        Returns:
            Token count (never negative).
        """
        ...

    def chars_for_tokens(self, tokens: int) -> int:
        """Approximate number of characters that fit in ``tokens`` tokens."""
        ...


class CharacterTokenizer:
    """Character-based token estimate.

    ``ceil(len(text) / chars_per_token)``. Rounding up keeps budgets
    conservative.
    """

    def __init__(self, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> None:
        """Initialize the tokenizer.

        Args:
            chars_per_token: Average characters per token (default 4.0).

        Raises:
            ValueError: If chars_per_token is not positive.
        """
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def count_tokens(self, text: str | None) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def chars_for_tokens(self, tokens: int) -> int:
        return max(0, int(tokens * self.chars_per_token))

    def __repr__(self) -> str:
        return f"CharacterTokenizer(chars_per_token={self.chars_per_token})"


class TiktokenTokenizer:
    """Tokenizer using tiktoken for OpenAI-compatible token counting.

    Character budgets for trimming still use the 4-chars-per-token ratio,
    since tiktoken has no inverse mapping.

    Attributes:
        model: The model name used for encoding selection.
    """

    def __init__(self, model: str = "gpt-4o") -> None:
        """Initialize the tokenizer.

        Args:
            model: Model name for encoding selection.
        """
        import tiktoken

        self.model = model
        encoding_name = MODEL_ENCODING_MAP.get(model, DEFAULT_ENCODING)
        self._encoding: Any = tiktoken.get_encoding(encoding_name)

    def count_tokens(self, text: str | None) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text))

    def chars_for_tokens(self, tokens: int) -> int:
        return max(0, int(tokens * DEFAULT_CHARS_PER_TOKEN))


_default_tokenizer: Tokenizer = CharacterTokenizer()


def get_default_tokenizer() -> Tokenizer:
    """Return the process-wide default tokenizer."""
    return _default_tokenizer


def estimate_tokens(text: str | None) -> int:
    """Quick token estimate with the default tokenizer."""
    return _default_tokenizer.count_tokens(text)


def get_tokenizer(kind: str = "character", *, model: str = "gpt-4o") -> Tokenizer:
    """Get a tokenizer by kind.

    Args:
        kind: ``"character"`` or ``"tiktoken"``.
        model: Model name, used by the tiktoken tokenizer.

    Returns:
        A Tokenizer instance.

    Raises:
        ValueError: If the kind is unknown.
    """
    if kind == "character":
        return CharacterTokenizer()
    if kind == "tiktoken":
        return TiktokenTokenizer(model=model)
    raise ValueError(f"Unknown tokenizer kind: {kind}")
