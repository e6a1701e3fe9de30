"""
Tests for the per-conversation retrieval cache.

Tests verify:
- Entries hold at most the configured number of documents
- Each put replaces the previous entry
- Entries expire after the TTL
- Excerpts are whitespace-collapsed and bounded
- Abandoned conversations are swept on put
"""

from api.models import SearchHit
from libs.caching.retrieval_cache import RetrievalCache


def hit(content):
    return SearchHit(id=content[:5], content=content, score=0.9)


def test_put_keeps_top_documents(clock):
    cache = RetrievalCache(ttl_seconds=1800, max_documents=2, clock=clock)

    cache.put("conv-1", [hit("first"), hit("second"), hit("third")])

    assert [d.content for d in cache.get("conv-1")] == ["first", "second"]


def test_put_replaces_previous_entry(clock):
    cache = RetrievalCache(clock=clock)
    cache.put("conv-1", [hit("old")])

    cache.put("conv-1", [hit("new")])

    assert [d.content for d in cache.get("conv-1")] == ["new"]


def test_entry_expires_after_ttl(clock):
    cache = RetrievalCache(ttl_seconds=1800, clock=clock)
    cache.put("conv-1", [hit("doc")])

    clock.advance(1800)
    assert cache.get("conv-1")

    clock.advance(1)
    assert cache.get("conv-1") == []
    assert cache.stats.expired == 1


def test_conversations_are_isolated(clock):
    cache = RetrievalCache(clock=clock)
    cache.put("conv-1", [hit("one")])

    assert cache.get("conv-2") == []

    cache.invalidate("conv-1")
    assert cache.get("conv-1") == []


def test_excerpt_bounded_and_collapsed(clock):
    cache = RetrievalCache(clock=clock)
    cache.put("conv-1", [hit("Okresný   súd\nBratislava"), hit("x" * 500)])

    excerpt = cache.excerpt("conv-1", max_chars=300)

    assert excerpt.startswith("Okresný súd Bratislava x")
    assert len(excerpt) == 300


def test_excerpt_missing(clock):
    assert RetrievalCache(clock=clock).excerpt("conv-1") is None


def test_stats_hit_rate(clock):
    cache = RetrievalCache(clock=clock)
    cache.put("conv-1", [hit("doc")])
    cache.get("conv-1")
    cache.get("conv-2")

    assert cache.stats.lookups == 2
    assert cache.stats.hit_rate == 0.5


def test_put_sweeps_abandoned_conversations(clock):
    cache = RetrievalCache(ttl_seconds=1800, cleanup_interval=300, clock=clock)
    cache.put("abandoned", [hit("old doc")])
    clock.advance(1801)

    cache.put("active", [hit("new doc")])

    assert len(cache) == 1
    assert cache.stats.expired == 1
    assert [d.content for d in cache.get("active")] == ["new doc"]


def test_cleanup_keeps_live_entries(clock):
    cache = RetrievalCache(ttl_seconds=1800, clock=clock)
    cache.put("old", [hit("old doc")])
    clock.advance(1000)
    cache.put("recent", [hit("recent doc")])
    clock.advance(900)

    assert cache.cleanup() == 1
    assert len(cache) == 1
    assert cache.get("recent")
