"""Pydantic models for per-conversation state."""

from __future__ import annotations

import time
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    """A single message in a conversation window."""

    role: Literal["system", "user", "assistant"]
    content: str


class ContextAnalysis(BaseModel):
    """Structured analysis of a conversation produced during summary regeneration."""

    topics: List[str] = Field(default_factory=list)
    concepts: List[str] = Field(default_factory=list)
    decisions: List[str] = Field(default_factory=list)
    laws: List[str] = Field(default_factory=list)
    flow: str = ""


class OptimizedContext(BaseModel):
    """Cached optimized message window and the rolling summary behind it."""

    messages: List[ChatMessage] = Field(default_factory=list)
    last_token_count: int = 0
    last_update_time: float = Field(default=0.0, description="Epoch seconds of the last optimization")
    summary: str = ""
    key_points: List[str] = Field(default_factory=list)
    last_analysis: Optional[ContextAnalysis] = None


class ConversationState(BaseModel):
    """
    Everything the core keeps about one conversation.

    Attributes:
        history: Most recent messages, oldest first, capped by the store
        previous_questions: Raw questions in the order they were asked
        last_response: Last generated answer, or empty
        context: Optimized window, summary and key points
        timestamp: Last-touched time in epoch seconds
        generation: Store-assigned number of this incarnation of the state
    """

    conversation_id: str
    history: List[ChatMessage] = Field(default_factory=list)
    previous_questions: List[str] = Field(default_factory=list)
    last_response: str = ""
    context: OptimizedContext = Field(default_factory=OptimizedContext)
    timestamp: float = Field(default_factory=time.time)
    generation: int = 0
