"""
Tests for summary regeneration.

Tests verify:
- Two-step analysis + condensation produces summary and key points
- Fenced JSON replies are accepted
- Any failure falls back to a single summarization call
- Fallback failure returns None (existing summary is kept)
"""

import json

import pytest

from api.composer.prompts import ANALYSIS_SYSTEM_PROMPT
from libs.memory.compression import SummaryRegenerator, split_summary_and_bullets
from libs.models.conversation import ChatMessage

ANALYSIS = {
    "topics": ["theft"],
    "concepts": ["intent"],
    "decisions": ["3T/115/2023"],
    "laws": ["§ 212 Criminal Code"],
    "flow": "User asked about theft penalties.",
}

HISTORY = [
    ChatMessage(role="user", content="What is the penalty for theft?"),
    ChatMessage(role="assistant", content="Under § 212 of the Criminal Code..."),
]


def scripted(analysis_reply, condense_reply, fallback_reply="Fallback summary.\n- point one\n- point two"):
    def handler(system, prompt):
        if system == ANALYSIS_SYSTEM_PROMPT and "Analyse the following" in prompt:
            return analysis_reply() if callable(analysis_reply) else analysis_reply
        if system == ANALYSIS_SYSTEM_PROMPT:
            return condense_reply() if callable(condense_reply) else condense_reply
        return fallback_reply() if callable(fallback_reply) else fallback_reply

    return handler


def boom():
    raise RuntimeError("service down")


@pytest.mark.asyncio
async def test_regenerate_two_step(make_completion):
    completion = make_completion(scripted(
        json.dumps(ANALYSIS),
        json.dumps({"summary": "Discussion of theft penalties.", "key_points": ["§ 212 applies", "intent matters"]}),
    ))
    regenerator = SummaryRegenerator(completion, max_key_points=5)

    result = await regenerator.regenerate(HISTORY, "conv-1")

    assert result.summary == "Discussion of theft penalties."
    assert result.key_points == ["§ 212 applies", "intent matters"]
    assert result.analysis.laws == ["§ 212 Criminal Code"]
    assert result.source == "analysis"
    assert len(completion.calls) == 2


@pytest.mark.asyncio
async def test_regenerate_accepts_fenced_json(make_completion):
    completion = make_completion(scripted(
        "```json\n" + json.dumps(ANALYSIS) + "\n```",
        "```\n" + json.dumps({"summary": "S", "key_points": [f"p{i}" for i in range(9)]}) + "\n```",
    ))
    regenerator = SummaryRegenerator(completion, max_key_points=5)

    result = await regenerator.regenerate(HISTORY)

    assert result.summary == "S"
    assert result.key_points == ["p0", "p1", "p2", "p3", "p4"]


@pytest.mark.asyncio
async def test_invalid_analysis_falls_back(make_completion):
    completion = make_completion(scripted("not json", "unused"))
    regenerator = SummaryRegenerator(completion, max_key_points=5)

    result = await regenerator.regenerate(HISTORY, "conv-1")

    assert result.source == "fallback"
    assert result.summary == "Fallback summary."
    assert result.key_points == ["point one", "point two"]


@pytest.mark.asyncio
async def test_condense_failure_falls_back(make_completion):
    completion = make_completion(scripted(json.dumps(ANALYSIS), boom))
    regenerator = SummaryRegenerator(completion)

    result = await regenerator.regenerate(HISTORY)

    assert result.source == "fallback"
    assert len(completion.calls) == 3


@pytest.mark.asyncio
async def test_fallback_failure_returns_none(make_completion):
    completion = make_completion(scripted(boom, boom, boom))
    regenerator = SummaryRegenerator(completion)

    assert await regenerator.regenerate(HISTORY) is None


@pytest.mark.asyncio
async def test_empty_history_returns_none(make_completion):
    completion = make_completion()
    regenerator = SummaryRegenerator(completion)

    assert await regenerator.regenerate([]) is None
    assert completion.calls == []


def test_split_summary_and_bullets():
    text = "The user asked about theft.\nThe answer cited § 212.\n\n- first\n* second\n1. third\n- fourth"

    result = split_summary_and_bullets(text, max_key_points=3)

    assert result.summary == "The user asked about theft. The answer cited § 212."
    assert result.key_points == ["first", "second", "third"]
