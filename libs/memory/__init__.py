"""
Memory systems for Lexcase.

Provides:
- Conversation store (bounded history, TTL expiry, per-conversation locks)
- Context optimizer (token-bounded message window)
- Summary regenerator (rolling summary and key points)
"""

from libs.memory.context_optimizer import ContextOptimizer
from libs.memory.compression import SummaryRegenerator
from libs.memory.short_term import ConversationStore

__all__ = ["ConversationStore", "ContextOptimizer", "SummaryRegenerator"]
