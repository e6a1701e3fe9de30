"""
Per-conversation cache of the documents retrieved on the previous turn.

The retrieval pipeline prefixes follow-up searches with an excerpt of these
documents so that "and what about the appeal?" still finds the same case.
Entries expire after a TTL (default 30 minutes) and are replaced wholesale
on every successful search.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    lookups: int = 0
    hits: int = 0
    expired: int = 0

    @property
    def hit_rate(self) -> float:
        if self.lookups == 0:
            return 0.0
        return self.hits / self.lookups


@dataclass
class _Entry:
    documents: List[Any]
    stored_at: float = field(default=0.0)


class RetrievalCache:
    """
    In-memory TTL cache keyed by conversation id.

    Usage:
        cache = RetrievalCache(ttl_seconds=1800, max_documents=2)
        cache.put(conversation_id, hits)
        previous = cache.get(conversation_id)
    """

    def __init__(
        self,
        ttl_seconds: float = 30 * 60,
        max_documents: int = 2,
        cleanup_interval: float = 5 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_documents = max_documents
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._last_cleanup = clock()
        self.stats = CacheStats()

    def get(self, conversation_id: str) -> List[Any]:
        """Documents from the previous turn, or an empty list."""
        self.stats.lookups += 1
        entry = self._entries.get(conversation_id)
        if entry is None:
            return []
        if self._clock() - entry.stored_at > self.ttl_seconds:
            self.stats.expired += 1
            del self._entries[conversation_id]
            logger.debug("Retrieval cache entry expired", conversation_id=conversation_id)
            return []
        self.stats.hits += 1
        return list(entry.documents)

    def put(self, conversation_id: str, documents: List[Any]) -> None:
        """Replace the conversation's entry with the top ``max_documents`` documents."""
        if self._clock() - self._last_cleanup >= self.cleanup_interval:
            self.cleanup()
        self._entries[conversation_id] = _Entry(
            documents=list(documents[: self.max_documents]),
            stored_at=self._clock(),
        )

    def cleanup(self) -> int:
        """Drop every expired entry, including conversations that never come back."""
        now = self._clock()
        expired = [cid for cid, entry in self._entries.items() if now - entry.stored_at > self.ttl_seconds]
        for conversation_id in expired:
            del self._entries[conversation_id]
        self.stats.expired += len(expired)
        self._last_cleanup = now
        if expired:
            logger.debug("Retrieval cache cleaned", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def invalidate(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def excerpt(self, conversation_id: str, max_chars: int = 300) -> Optional[str]:
        """Bounded excerpt of the cached documents' text, joined by spaces."""
        documents = self.get(conversation_id)
        if not documents:
            return None
        text = " ".join(getattr(doc, "content", str(doc)).strip() for doc in documents)
        text = " ".join(text.split())
        return text[:max_chars] or None

    def clear(self) -> None:
        self._entries.clear()
