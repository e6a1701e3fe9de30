"""
Short-term memory for conversation state.

Keeps one ``ConversationState`` per conversation id in process memory for:
- Sliding-window history (keeps last N messages)
- Rolling summary and key points
- Lazy TTL expiry (stale state is replaced on next access)
- Per-conversation serialization of mutations
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import structlog

from libs.models.conversation import ChatMessage, ConversationState, OptimizedContext

logger = structlog.get_logger(__name__)

_UPDATABLE_FIELDS = {"history", "previous_questions", "last_response", "context"}


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class ConversationStore:
    """
    Owns every conversation's state and its lifecycle.

    Features:
    - Create-or-fetch that never fails for an unknown id
    - History and previous questions capped to ``max_history_length``
    - Key points capped to ``max_key_points``
    - Whole-state TTL (default 30 minutes), checked lazily

    Usage:
        store = ConversationStore(max_history_length=10)
        await store.init()
        async with store.lock(conversation_id):
            state = store.get_or_create(conversation_id)
            store.update(conversation_id, last_response="...")
        await store.shutdown()
    """

    def __init__(
        self,
        max_history_length: int = 10,
        max_key_points: int = 5,
        state_ttl: float = 30 * 60,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the store.

        Args:
            max_history_length: Maximum messages (and questions) to keep
            max_key_points: Maximum key points kept in the rolling context
            state_ttl: Seconds after the last touch before state is reset
            clock: Time source in epoch seconds, injectable for tests
        """
        self.max_history_length = max_history_length
        self.max_key_points = max_key_points
        self.state_ttl = state_ttl
        self._clock = clock
        self._states: Dict[str, ConversationState] = {}
        self._locks: Dict[str, _LockEntry] = {}
        self._generation = 0
        self._running = False

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "ConversationStore":
        return cls(
            max_history_length=settings.max_history_length,
            max_key_points=settings.max_key_points,
            state_ttl=settings.state_ttl_seconds,
            clock=clock,
        )

    async def init(self) -> None:
        self._running = True
        logger.info("Conversation store started", max_history_length=self.max_history_length)

    async def shutdown(self) -> None:
        """Drop all state. The store can be re-initialized afterwards."""
        count = len(self._states)
        self._states.clear()
        self._locks.clear()
        self._running = False
        logger.info("Conversation store stopped", conversations_dropped=count)

    def now(self) -> float:
        return self._clock()

    def is_expired(self, state: ConversationState) -> bool:
        return self.now() - state.timestamp > self.state_ttl

    def _fresh(self, conversation_id: str) -> ConversationState:
        self._generation += 1
        return ConversationState(conversation_id=conversation_id, timestamp=self.now(), generation=self._generation)

    def _live_state(self, conversation_id: str) -> ConversationState:
        state = self._states.get(conversation_id)
        if state is None:
            state = self._fresh(conversation_id)
            self._states[conversation_id] = state
            logger.debug("Conversation state created", conversation_id=conversation_id)
        elif self.is_expired(state):
            logger.info(
                "Conversation state expired, resetting",
                conversation_id=conversation_id,
                idle_seconds=round(self.now() - state.timestamp, 1),
            )
            state = self._fresh(conversation_id)
            self._states[conversation_id] = state
        return state

    def get_or_create(self, conversation_id: str) -> ConversationState:
        """
        Return a copy of the conversation's state, creating it if needed.

        Absent or expired state is replaced by an empty one stamped with the
        current time. Reading does not refresh the timestamp.
        """
        return self._live_state(conversation_id).model_copy(deep=True)

    def update(self, conversation_id: str, **fields: Any) -> ConversationState:
        """
        Merge fields into the conversation's state.

        Args:
            conversation_id: Conversation identifier
            **fields: Any of history, previous_questions, last_response, context

        Returns:
            Copy of the updated state
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Unknown conversation state fields: {sorted(unknown)}")

        state = self._live_state(conversation_id)
        if "history" in fields:
            history = [ChatMessage.model_validate(m).model_copy() for m in fields["history"]]
            state.history = history[-self.max_history_length:]
        if "previous_questions" in fields:
            state.previous_questions = list(fields["previous_questions"])[-self.max_history_length:]
        if "last_response" in fields:
            state.last_response = fields["last_response"] or ""
        if "context" in fields:
            context = OptimizedContext.model_validate(fields["context"]).model_copy(deep=True)
            context.key_points = context.key_points[: self.max_key_points]
            state.context = context
        state.timestamp = self.now()
        return state.model_copy(deep=True)

    def update_context(self, conversation_id: str, **fields: Any) -> ConversationState:
        """Merge fields into the nested optimized context (summary, key_points, ...)."""
        state = self._live_state(conversation_id)
        merged = state.context.model_copy(update=fields)
        return self.update(conversation_id, context=merged.model_dump())

    def append_turn(self, conversation_id: str, question: str, answer: str) -> ConversationState:
        """Record a question/answer exchange with the sliding window applied."""
        state = self._live_state(conversation_id)
        history: List[ChatMessage] = state.history + [
            ChatMessage(role="user", content=question),
            ChatMessage(role="assistant", content=answer),
        ]
        return self.update(
            conversation_id,
            history=history,
            previous_questions=state.previous_questions + [question],
            last_response=answer,
        )

    def clear(self, conversation_id: str) -> bool:
        """
        Clear conversation state.

        Returns:
            True if state existed
        """
        existed = self._states.pop(conversation_id, None) is not None
        logger.info("Conversation cleared", conversation_id=conversation_id, existed=existed)
        return existed

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    @asynccontextmanager
    async def lock(self, conversation_id: str) -> AsyncIterator[None]:
        """
        Serialize work on one conversation.

        A second caller for the same id waits; other ids are unaffected.
        """
        entry = self._locks.get(conversation_id)
        if entry is None:
            entry = _LockEntry()
            self._locks[conversation_id] = entry
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(conversation_id) is entry:
                del self._locks[conversation_id]

    def is_locked(self, conversation_id: str) -> bool:
        entry = self._locks.get(conversation_id)
        return entry is not None and entry.lock.locked()

    @property
    def running(self) -> bool:
        return self._running

    def snapshot(self, conversation_id: str) -> Optional[ConversationState]:
        """Current state without creating or expiring anything."""
        state = self._states.get(conversation_id)
        return state.model_copy(deep=True) if state is not None else None
