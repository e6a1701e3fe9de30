"""Completion service: system instruction + user prompt in, generated text out."""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Protocol

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from libs.common.errors import ServiceTimeout, TransientServiceError
from libs.common.usage import UsageTracker
from libs.memory.tokens import estimate_text_tokens

logger = structlog.get_logger(__name__)

EMPTY_RESPONSE = "No response was generated."


class CompletionService(Protocol):
    async def complete(
        self,
        system_instruction: str,
        user_prompt: str,
        conversation_id: Optional[str] = None,
    ) -> str:
        ...


class OpenAICompletionService:
    """
    Chat completion through ``langchain_openai.ChatOpenAI``.

    Every call is bounded by ``timeout_seconds``. Timeouts surface as
    ``ServiceTimeout``; any other failure as ``TransientServiceError`` so
    the retry executor can decide what to do with it.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 2000,
        timeout_seconds: float = 60.0,
        usage_tracker: Optional[UsageTracker] = None,
        llm=None,
    ):
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.usage_tracker = usage_tracker
        self._llm = llm or ChatOpenAI(
            model=model,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            max_retries=0,
        )

    @classmethod
    def from_settings(cls, settings, usage_tracker: Optional[UsageTracker] = None) -> "OpenAICompletionService":
        return cls(
            model=settings.openai_model,
            api_key=settings.openai_api_key,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            timeout_seconds=settings.completion_timeout_seconds,
            usage_tracker=usage_tracker,
        )

    async def complete(
        self,
        system_instruction: str,
        user_prompt: str,
        conversation_id: Optional[str] = None,
    ) -> str:
        messages = [SystemMessage(content=system_instruction), HumanMessage(content=user_prompt)]
        start = time.time()
        try:
            response = await asyncio.wait_for(self._llm.ainvoke(messages), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning("Completion timed out", model=self.model, timeout_seconds=self.timeout_seconds)
            raise ServiceTimeout(f"Completion timed out after {self.timeout_seconds}s", service="completion") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Completion call failed", model=self.model, error=str(e))
            raise TransientServiceError(f"Completion failed: {e}", service="completion") from e

        content = response.content if isinstance(response.content, str) else str(response.content)
        duration_ms = (time.time() - start) * 1000

        if self.usage_tracker is not None and conversation_id:
            usage = getattr(response, "usage_metadata", None) or {}
            self.usage_tracker.record(
                conversation_id,
                model=self.model,
                input_tokens=usage.get("input_tokens") or estimate_text_tokens(system_instruction + user_prompt),
                output_tokens=usage.get("output_tokens") or estimate_text_tokens(content),
                duration_ms=duration_ms,
            )

        return content.strip() or EMPTY_RESPONSE
