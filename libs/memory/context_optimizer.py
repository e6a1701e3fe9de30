"""
Bounded message window for the completion service.

Builds the conversation turn sent alongside the document context:
- One leading system instruction
- Rolling summary and key points, when present
- Recent history, deduplicated by content
- Hard token budget (default 8000); overflow drops the oldest history and
  schedules a summary regeneration in the background
"""

import asyncio
from typing import Dict, List, Optional

import structlog

from api.composer.prompts import CONVERSATION_SYSTEM_PROMPT
from libs.memory.compression import SummaryRegenerator
from libs.memory.short_term import ConversationStore
from libs.memory.tokens import estimate_tokens
from libs.models.conversation import ChatMessage, ConversationState

logger = structlog.get_logger(__name__)

SUMMARY_PREFIX = "Conversation summary: "
KEY_POINTS_PREFIX = "Key points so far:\n"


class ContextOptimizer:
    """
    Produces the optimized message window for a conversation.

    Usage:
        optimizer = ContextOptimizer(store, regenerator, max_total_tokens=8000)
        messages = await optimizer.optimize(state)
    """

    def __init__(
        self,
        store: ConversationStore,
        regenerator: Optional[SummaryRegenerator] = None,
        max_total_tokens: int = 8000,
        context_ttl: float = 5 * 60,
        reseed_count: int = 3,
        system_prompt: str = CONVERSATION_SYSTEM_PROMPT,
    ):
        self.store = store
        self.regenerator = regenerator
        self.max_total_tokens = max_total_tokens
        self.context_ttl = context_ttl
        self.reseed_count = reseed_count
        self.system_message = ChatMessage(role="system", content=system_prompt)
        self._pending: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, settings, store: ConversationStore, regenerator: Optional[SummaryRegenerator] = None) -> "ContextOptimizer":
        return cls(
            store=store,
            regenerator=regenerator,
            max_total_tokens=settings.max_total_tokens,
            context_ttl=settings.context_ttl_seconds,
        )

    def _is_generated(self, message: ChatMessage) -> bool:
        if message.role != "system":
            return False
        return (
            message.content == self.system_message.content
            or message.content.startswith(SUMMARY_PREFIX)
            or message.content.startswith(KEY_POINTS_PREFIX)
        )

    def _base_messages(self, state: ConversationState) -> List[ChatMessage]:
        context = state.context
        if not context.messages or self.store.now() - context.last_update_time > self.context_ttl:
            return list(state.history[-self.reseed_count:])
        return [m for m in context.messages if not self._is_generated(m)]

    def _raw_messages(self, state: ConversationState) -> List[ChatMessage]:
        """
        Base window plus newer history, chronological and unique by content.

        The base maps back onto history at the earliest index where one of
        its messages last occurs; everything from there on comes from
        history in order. Base messages that already left history are older
        than anything in it and go first.
        """
        base = self._base_messages(state)
        last_seen: Dict[str, int] = {}
        for i, message in enumerate(state.history):
            last_seen[message.content] = i

        anchored = [last_seen[m.content] for m in base if m.content in last_seen]
        start = min(anchored) if anchored else 0
        candidates = [m for m in base if m.content not in last_seen] + list(state.history[start:])

        raw: List[ChatMessage] = []
        present = {self.system_message.content}
        for message in candidates:
            if message.content not in present:
                raw.append(message)
                present.add(message.content)
        return raw

    def _truncate(self, history: List[ChatMessage]) -> List[ChatMessage]:
        """System message plus the longest suffix of history that fits the budget."""
        kept: List[ChatMessage] = []
        for message in reversed(history):
            candidate = [self.system_message, message] + kept
            if estimate_tokens(candidate) > self.max_total_tokens:
                break
            kept.insert(0, message)
        return [self.system_message] + kept

    async def optimize(self, state: ConversationState) -> List[ChatMessage]:
        """
        Build and persist the optimized window for ``state``.

        Returns:
            Messages in the order they should be sent
        """
        context = state.context
        messages: List[ChatMessage] = [self.system_message]
        if context.summary.strip():
            messages.append(ChatMessage(role="system", content=f"{SUMMARY_PREFIX}{context.summary.strip()}"))
        if context.key_points:
            bullets = "\n".join(f"- {point}" for point in context.key_points)
            messages.append(ChatMessage(role="system", content=f"{KEY_POINTS_PREFIX}{bullets}"))
        messages.extend(self._raw_messages(state))

        token_count = estimate_tokens(messages)
        if token_count > self.max_total_tokens:
            logger.info(
                "Context over token budget, truncating history",
                conversation_id=state.conversation_id,
                estimated_tokens=token_count,
                max_total_tokens=self.max_total_tokens,
            )
            messages = self._truncate(state.history)
            token_count = estimate_tokens(messages)
            self._schedule_regeneration(state.conversation_id, list(state.history), state.generation)

        self.store.update_context(
            state.conversation_id,
            messages=messages,
            last_token_count=token_count,
            last_update_time=self.store.now(),
        )
        return messages

    def _schedule_regeneration(self, conversation_id: str, history: List[ChatMessage], generation: int) -> None:
        if self.regenerator is None:
            return
        pending = self._pending.get(conversation_id)
        if pending is not None and not pending.done():
            return
        task = asyncio.create_task(self._regenerate(conversation_id, history, generation))
        self._pending[conversation_id] = task
        task.add_done_callback(lambda t, cid=conversation_id: self._forget(cid, t))

    def _forget(self, conversation_id: str, task: asyncio.Task) -> None:
        if self._pending.get(conversation_id) is task:
            del self._pending[conversation_id]

    async def _regenerate(self, conversation_id: str, history: List[ChatMessage], generation: int) -> None:
        result = await self.regenerator.regenerate(history, conversation_id)
        if result is None:
            return
        async with self.store.lock(conversation_id):
            # Cleared or reset while the summary was being generated.
            current = self.store.snapshot(conversation_id)
            if current is None or current.generation != generation or self.store.is_expired(current):
                logger.info("Discarding summary for a conversation that is gone", conversation_id=conversation_id)
                return
            self.store.update_context(
                conversation_id,
                summary=result.summary,
                key_points=result.key_points,
                last_analysis=result.analysis,
            )
        logger.info(
            "Conversation summary updated",
            conversation_id=conversation_id,
            source=result.source,
            key_points=len(result.key_points),
        )

    def cancel(self, conversation_id: str) -> bool:
        """Cancel a pending regeneration for a conversation that is going away."""
        task = self._pending.pop(conversation_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def drain(self) -> None:
        """Wait for pending summary regenerations (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)
