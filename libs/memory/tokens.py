"""Token cost approximation (rough: 4 chars per token)."""

from __future__ import annotations

from typing import Iterable, Mapping, Union

CHARS_PER_TOKEN = 4


def estimate_text_tokens(text: str) -> int:
    return len(text or "") // CHARS_PER_TOKEN


def estimate_tokens(messages: Iterable[Union[Mapping[str, str], object]]) -> int:
    """
    Estimate the token cost of a message list.

    Accepts ``ChatMessage`` models or plain ``{"role", "content"}`` dicts,
    matching what the memory layer and the composer pass around.
    """
    total_chars = 0
    for message in messages:
        if isinstance(message, Mapping):
            content = message.get("content", "")
        else:
            content = getattr(message, "content", "")
        total_chars += len(content or "")
    return total_chars // CHARS_PER_TOKEN
