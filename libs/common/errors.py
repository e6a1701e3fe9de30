"""Error taxonomy shared by the conversation and retrieval layers.

Every error carries a stable ``error_code`` and a ``user_message`` that is
safe to show to the person asking the question. The HTTP layer maps the
codes onto status codes; the orchestrator decides which ones end a turn
and which ones become a canned answer.
"""

from __future__ import annotations


class LexcaseError(Exception):
    """Base class for errors raised by the Lexcase core."""

    error_code = "LEXCASE_ERROR"
    default_message = "An error occurred while processing your request."

    def __init__(self, message: str | None = None, *, user_message: str | None = None):
        super().__init__(message or self.default_message)
        self.user_message = user_message or self.default_message


class ValidationError(LexcaseError):
    """Question rejected before any service is called. Never retried."""

    error_code = "INVALID_QUESTION"
    default_message = "Invalid question."


class RateLimitExceeded(LexcaseError):
    """User exceeded the per-minute request budget."""

    error_code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests. Please wait a moment before asking again."

    def __init__(self, message: str | None = None, *, retry_after: float = 0.0, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ConcurrencyExceeded(LexcaseError):
    """The global in-flight request budget is exhausted."""

    error_code = "CONCURRENCY_EXCEEDED"
    default_message = "The service is busy. Please try again shortly."


class NoRelevantDocuments(LexcaseError):
    """Retrieval found no case material for the question."""

    error_code = "NO_RELEVANT_DOCUMENTS"
    default_message = "No relevant documents were found for your question."


class TransientServiceError(LexcaseError):
    """Completion, search or embedding call failed; eligible for retry."""

    error_code = "SERVICE_ERROR"
    default_message = "An error occurred while processing your request."

    def __init__(self, message: str | None = None, *, service: str = "unknown", **kwargs):
        super().__init__(message, **kwargs)
        self.service = service


class ServiceTimeout(TransientServiceError):
    """An outbound call exceeded its configured deadline."""

    error_code = "SERVICE_TIMEOUT"


NON_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    ValidationError,
    RateLimitExceeded,
    ConcurrencyExceeded,
    NoRelevantDocuments,
)
