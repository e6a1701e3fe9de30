"""Per-conversation token usage and cost ledger for completion calls."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)

# Cost tracking, USD per 1K tokens
OPENAI_COSTS = {
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "gpt-4-turbo-preview": {"input": 0.01, "output": 0.03},
    "text-embedding-3-large": {"input": 0.00013, "output": 0.0},
}


@dataclass
class TokenUsage:
    """Track token usage for cost monitoring."""

    input_tokens: int
    output_tokens: int
    model: str
    cost_usd: float
    duration_ms: float
    recorded_at: float


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    costs = OPENAI_COSTS.get(model)
    if costs is None:
        return 0.0
    return (input_tokens / 1000) * costs["input"] + (output_tokens / 1000) * costs["output"]


class UsageTracker:
    """
    Collects ``TokenUsage`` records keyed by conversation id.

    Conversations with no record newer than ``retention_seconds`` are swept
    from ``record`` at most once per ``cleanup_interval``.
    """

    def __init__(
        self,
        retention_seconds: float = 30 * 60,
        cleanup_interval: float = 5 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.retention_seconds = retention_seconds
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._records: Dict[str, List[TokenUsage]] = {}
        self._last_cleanup = clock()

    def record(
        self,
        conversation_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration_ms: float = 0.0,
    ) -> TokenUsage:
        usage = TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
            cost_usd=calculate_cost(model, input_tokens, output_tokens),
            duration_ms=duration_ms,
            recorded_at=self._clock(),
        )
        if usage.recorded_at - self._last_cleanup >= self.cleanup_interval:
            self.cleanup()
        self._records.setdefault(conversation_id, []).append(usage)
        logger.debug(
            "Completion usage recorded",
            conversation_id=conversation_id,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=round(usage.cost_usd, 6),
        )
        return usage

    def records(self, conversation_id: str) -> List[TokenUsage]:
        return list(self._records.get(conversation_id, []))

    def summary(self, conversation_id: str) -> Dict[str, float]:
        records = self._records.get(conversation_id, [])
        return {
            "calls": len(records),
            "input_tokens": sum(r.input_tokens for r in records),
            "output_tokens": sum(r.output_tokens for r in records),
            "cost_usd": round(sum(r.cost_usd for r in records), 6),
            "duration_ms": round(sum(r.duration_ms for r in records), 2),
        }

    def clear(self, conversation_id: str) -> None:
        self._records.pop(conversation_id, None)

    def cleanup(self) -> int:
        """Drop conversations whose newest record is older than the retention window."""
        now = self._clock()
        stale = [
            cid for cid, records in self._records.items()
            if not records or now - records[-1].recorded_at > self.retention_seconds
        ]
        for conversation_id in stale:
            del self._records[conversation_id]
        self._last_cleanup = now
        if stale:
            logger.debug("Usage records cleaned", removed=len(stale), remaining=len(self._records))
        return len(stale)
