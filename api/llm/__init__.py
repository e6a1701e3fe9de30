"""LLM module: chat completion service adapters."""

from .completion import CompletionService, OpenAICompletionService

__all__ = ["CompletionService", "OpenAICompletionService"]
