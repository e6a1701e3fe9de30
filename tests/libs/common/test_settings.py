"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from libs.common.settings import Settings


def test_defaults():
    settings = Settings()

    assert settings.max_history_length == 10
    assert settings.max_total_tokens == 8000
    assert settings.state_ttl_seconds == 1800
    assert settings.context_ttl_seconds == 300
    assert settings.max_requests_per_minute == 60
    assert settings.max_concurrent_requests == 10
    assert settings.retry_max_attempts == 3
    assert settings.retrieval_char_budget == 10000


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("LEXCASE_MAX_HISTORY_LENGTH", "4")
    monkeypatch.setenv("LEXCASE_MILVUS_COLLECTION", "rozhodnutia")

    settings = Settings()

    assert settings.max_history_length == 4
    assert settings.milvus_collection == "rozhodnutia"


def test_cors_origins_parsed(monkeypatch):
    monkeypatch.setenv("LEXCASE_CORS_ORIGINS", "https://a.example, https://b.example")

    assert Settings().cors_origins == ["https://a.example", "https://b.example"]


def test_cors_origins_keyword():
    assert Settings(cors_origins="https://c.example").cors_origins == ["https://c.example"]


def test_embedding_timeout_from_env(monkeypatch):
    monkeypatch.setenv("LEXCASE_EMBEDDING_TIMEOUT_SECONDS", "2.5")

    assert Settings().embedding_timeout_seconds == 2.5


def test_max_delay_below_base_rejected():
    with pytest.raises(ValidationError):
        Settings(retry_base_delay_ms=2000, retry_max_delay_ms=1000)
