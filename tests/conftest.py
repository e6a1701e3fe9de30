"""
Pytest configuration and fixtures for Lexcase tests.

Provides shared fixtures for:
- Controllable clock
- Scripted completion service
- In-memory vector search and embedding services
- Test settings

External services are never contacted from tests.
"""

from typing import Any, Callable, Dict, List, Optional

import pytest

from api.retrieval import ScoredPoint
from libs.common.errors import TransientServiceError


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCompletion:
    """
    Completion service answering from a handler.

    ``handler(system_instruction, user_prompt)`` returns the reply or raises.
    Every call is recorded in ``calls``.
    """

    def __init__(self, handler: Optional[Callable[[str, str], str]] = None):
        self.handler = handler or (lambda system, prompt: "ok")
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system_instruction: str, user_prompt: str, conversation_id: Optional[str] = None) -> str:
        self.calls.append({"system": system_instruction, "prompt": user_prompt, "conversation_id": conversation_id})
        return self.handler(system_instruction, user_prompt)


class FakeVectorSearch:
    """Filters stored points by payload equality and returns the best scores."""

    def __init__(self, points: Optional[List[ScoredPoint]] = None, failing_cases: Optional[set] = None):
        self.points = points or []
        self.failing_cases = failing_cases or set()
        self.calls: List[Dict[str, Any]] = []

    async def search(self, vector, filter: Optional[Dict[str, Any]] = None, limit: int = 5) -> List[ScoredPoint]:
        self.calls.append({"filter": dict(filter) if filter else None, "limit": limit})
        if filter and filter.get("case_id") in self.failing_cases:
            raise TransientServiceError(f"search failed for {filter['case_id']}", service="search")
        matches = [
            p for p in self.points
            if all(p.payload.get(key) == value for key, value in (filter or {}).items())
        ]
        return sorted(matches, key=lambda p: p.score, reverse=True)[:limit]


class FakeEmbeddings:
    def __init__(self):
        self.texts: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.texts.append(text)
        return [0.1, 0.2, 0.3]


def point(point_id: str, case_id: Optional[str], document_type: str, content: str, score: float = 0.5, **extra) -> ScoredPoint:
    payload: Dict[str, Any] = {"content": content, "document_type": document_type, **extra}
    if case_id is not None:
        payload["case_id"] = case_id
    return ScoredPoint(id=point_id, score=score, payload=payload)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def embeddings():
    return FakeEmbeddings()


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("LEXCASE_APP_ENV", "test")
    monkeypatch.setenv("LEXCASE_LOG_JSON", "false")


@pytest.fixture
def settings():
    from libs.common.settings import Settings

    return Settings(app_env="test", openai_api_key="test-key")


@pytest.fixture
def make_point():
    """Factory for search points: ``make_point(id, case_id, document_type, content, score=..., **payload)``."""
    return point


@pytest.fixture
def make_search():
    """Factory for in-memory vector search services."""
    return FakeVectorSearch


@pytest.fixture
def make_completion():
    """Factory for scripted completion services."""
    return FakeCompletion
