"""
Caching utilities for Lexcase.

- Per-conversation retrieval cache feeding follow-up search queries
"""

from libs.caching.retrieval_cache import RetrievalCache

__all__ = ["RetrievalCache"]
