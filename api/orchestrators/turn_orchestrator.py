"""Turn orchestration for Lexcase conversations.

One call to ``handle_turn`` runs a complete question/answer exchange:

    validate -> lock conversation -> load state -> admit (rate limit)
    -> concurrency slot -> optimize window -> retrieve + answer (retried)
    -> append turn -> release

Validation, rate limit and concurrency errors are raised to the caller.
"No documents" and exhausted transient failures end the turn with a fixed
reply so the conversation stays usable.
"""

import re
import time
from dataclasses import dataclass
from typing import Optional

import structlog

from api.composer.prompts import (
    FAILURE_REPLY,
    NO_DOCUMENTS_REPLY,
    NO_RETRIEVAL_REPLY,
    NOT_LEGAL_REPLY,
)
from api.llm.completion import OpenAICompletionService
from api.middleware.rate_limiter import RateLimiter
from api.retrieval import EmbeddingClient, MilvusClient, RetrievalPipeline
from libs.common.errors import (
    ConcurrencyExceeded,
    NoRelevantDocuments,
    RateLimitExceeded,
    TransientServiceError,
    ValidationError,
)
from libs.common.retry import RetryExecutor, RetryPolicy
from libs.common.usage import UsageTracker
from libs.memory.compression import SummaryRegenerator
from libs.memory.context_optimizer import ContextOptimizer
from libs.memory.short_term import ConversationStore

logger = structlog.get_logger(__name__)

_SUSPICIOUS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"<\s*script",
        r"javascript\s*:",
        r"<[^>]*\bon\w+\s*=",
        r"ignore\s+(all\s+)?(the\s+)?previous\s+instructions",
        r"disregard\s+(all\s+)?(the\s+)?(previous|above)\s+instructions",
        r"you\s+are\s+now\s+(a|an)\b",
    )
]

_REFUSALS = {NOT_LEGAL_REPLY, NO_RETRIEVAL_REPLY}


@dataclass
class TurnResult:
    """Answer plus how the turn ended."""

    answer: str
    outcome: str  # answered, no_documents, refused or failed
    processing_time_ms: float


def validate_question(question: Optional[str], max_length: int = 2000) -> str:
    """
    Reject questions that must not reach any service.

    Returns:
        The question stripped of surrounding whitespace

    Raises:
        ValidationError: Empty, too long, or containing markup/injection
    """
    if question is None or not question.strip():
        raise ValidationError("empty question", user_message="Please enter a question.")
    question = question.strip()
    if len(question) > max_length:
        raise ValidationError(
            f"question too long ({len(question)} > {max_length})",
            user_message=f"The question is too long. Please keep it under {max_length} characters.",
        )
    for pattern in _SUSPICIOUS_PATTERNS:
        if pattern.search(question):
            raise ValidationError(
                "question contains disallowed content",
                user_message="The question contains content that cannot be processed.",
            )
    return question


class TurnOrchestrator:
    """
    Coordinates conversation state, rate limiting and the retrieval pipeline.

    Usage:
        orchestrator = TurnOrchestrator.from_settings(get_settings())
        await orchestrator.init()
        answer = await orchestrator.handle_turn("conv-1", "Aký trest hrozí za krádež?")
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        store: ConversationStore,
        limiter: RateLimiter,
        optimizer: ContextOptimizer,
        pipeline: RetrievalPipeline,
        retry_executor: Optional[RetryExecutor] = None,
        usage_tracker: Optional[UsageTracker] = None,
        max_question_length: int = 2000,
    ):
        self.store = store
        self.limiter = limiter
        self.optimizer = optimizer
        self.pipeline = pipeline
        self.retry_executor = retry_executor or RetryExecutor()
        self.usage_tracker = usage_tracker if usage_tracker is not None else UsageTracker()
        self.max_question_length = max_question_length

    @classmethod
    def from_settings(cls, settings) -> "TurnOrchestrator":
        """Wire the production services (OpenAI, Milvus) from settings."""
        usage_tracker = UsageTracker(retention_seconds=settings.state_ttl_seconds)
        completion = OpenAICompletionService.from_settings(settings, usage_tracker=usage_tracker)
        pipeline = RetrievalPipeline.from_settings(
            settings,
            completion=completion,
            vector_search=MilvusClient.from_settings(settings),
            embeddings=EmbeddingClient.from_settings(settings),
        )
        return cls.build(settings, completion=completion, pipeline=pipeline, usage_tracker=usage_tracker)

    @classmethod
    def build(
        cls,
        settings,
        completion,
        pipeline: RetrievalPipeline,
        usage_tracker: Optional[UsageTracker] = None,
        clock=time.time,
        sleep=None,
    ) -> "TurnOrchestrator":
        """Wire the in-process components around an already built pipeline."""
        store = ConversationStore.from_settings(settings, clock=clock)
        regenerator = SummaryRegenerator(completion, max_key_points=settings.max_key_points)
        executor_kwargs = {"sleep": sleep} if sleep is not None else {}
        return cls(
            store=store,
            limiter=RateLimiter.from_settings(settings, clock=clock),
            optimizer=ContextOptimizer.from_settings(settings, store, regenerator),
            pipeline=pipeline,
            retry_executor=RetryExecutor(RetryPolicy.from_settings(settings), **executor_kwargs),
            usage_tracker=(
                usage_tracker
                if usage_tracker is not None
                else UsageTracker(retention_seconds=settings.state_ttl_seconds, clock=clock)
            ),
            max_question_length=settings.max_question_length,
        )

    async def init(self) -> None:
        await self.store.init()

    async def shutdown(self) -> None:
        await self.optimizer.drain()
        await self.store.shutdown()
        self.pipeline.cache.clear()
        self.limiter.reset()

    def validate_question(self, question: Optional[str]) -> str:
        return validate_question(question, self.max_question_length)

    async def handle_turn(self, conversation_id: str, question: str, user_id: Optional[str] = None) -> str:
        """
        Answer one question within a conversation.

        Returns:
            The answer text (possibly a fixed reply)

        Raises:
            ValidationError: Question rejected
            RateLimitExceeded: User is over the per-minute budget
            ConcurrencyExceeded: Too many requests in flight
        """
        result = await self.handle_turn_detailed(conversation_id, question, user_id)
        return result.answer

    async def handle_turn_detailed(
        self, conversation_id: str, question: str, user_id: Optional[str] = None
    ) -> TurnResult:
        start = time.time()
        question = self.validate_question(question)

        async with self.store.lock(conversation_id):
            state = self.store.get_or_create(conversation_id)

            if not self.limiter.admit(user_id):
                if self.limiter.active_requests >= self.limiter.max_concurrent:
                    raise ConcurrencyExceeded(f"{self.limiter.active_requests} requests in flight")
                retry_after = self.limiter.retry_after(user_id)
                raise RateLimitExceeded(f"user {user_id or 'anonymous'} over limit", retry_after=retry_after)

            async with self.limiter.slot():
                window = await self.optimizer.optimize(state)
                logger.info(
                    "Turn started",
                    conversation_id=conversation_id,
                    user_id=user_id,
                    question=question[:100],
                    window_messages=len(window),
                )

                try:
                    answer = await self.retry_executor.execute(
                        lambda: self.pipeline.answer_with_context(question, window, conversation_id)
                    )
                    outcome = "refused" if answer in _REFUSALS else "answered"
                except NoRelevantDocuments:
                    answer, outcome = NO_DOCUMENTS_REPLY, "no_documents"
                except TransientServiceError as e:
                    logger.error(
                        "Turn failed after retries",
                        conversation_id=conversation_id,
                        user_id=user_id,
                        question=question[:100],
                        service=e.service,
                        error_code=e.error_code,
                        error=str(e),
                        exc_info=True,
                    )
                    answer, outcome = FAILURE_REPLY, "failed"

                self.store.append_turn(conversation_id, question, answer)

        processing_time_ms = round((time.time() - start) * 1000, 2)
        logger.info(
            "Turn completed",
            conversation_id=conversation_id,
            outcome=outcome,
            answer_length=len(answer),
            processing_time_ms=processing_time_ms,
        )
        return TurnResult(answer=answer, outcome=outcome, processing_time_ms=processing_time_ms)

    def clear(self, conversation_id: str) -> bool:
        """Forget a conversation: state, cached documents, usage and any pending summary."""
        self.optimizer.cancel(conversation_id)
        self.pipeline.cache.invalidate(conversation_id)
        self.usage_tracker.clear(conversation_id)
        return self.store.clear(conversation_id)
