"""Tests for the character-based token estimate."""

from libs.memory.tokens import estimate_text_tokens, estimate_tokens
from libs.models.conversation import ChatMessage


def test_estimate_text_tokens():
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens("abcd") == 1
    assert estimate_text_tokens("a" * 4003) == 1000


def test_estimate_tokens_sums_all_messages():
    messages = [
        ChatMessage(role="system", content="a" * 40),
        ChatMessage(role="user", content="b" * 41),
    ]

    assert estimate_tokens(messages) == 20


def test_estimate_tokens_accepts_dicts():
    assert estimate_tokens([{"role": "user", "content": "x" * 80}, {"role": "assistant"}]) == 20


def test_estimate_tokens_empty():
    assert estimate_tokens([]) == 0
