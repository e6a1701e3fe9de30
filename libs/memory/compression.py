"""
Rolling summary regeneration for long conversations.

When the context optimizer has to drop history, the dropped turns are
compressed into a short summary and a handful of key points:
1. Structural analysis (topics, concepts, decisions, laws, flow) as JSON
2. Condensation of that analysis into prose plus bullet points

If either step fails a single plain summarization call is tried instead.
Failures never propagate: the caller keeps its previous summary.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

import structlog
from pydantic import BaseModel, Field

from api.composer.prompts import (
    ANALYSIS_SYSTEM_PROMPT,
    CONDENSE_SUMMARY_PROMPT,
    CONVERSATION_ANALYSIS_PROMPT,
    FALLBACK_SUMMARY_PROMPT,
    LEGAL_SYSTEM_PROMPT,
    format_history,
)
from libs.models.conversation import ChatMessage, ContextAnalysis

logger = structlog.get_logger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")


class CondensedSummary(BaseModel):
    """Expected JSON structure of the condensation step."""

    summary: str
    key_points: List[str] = Field(default_factory=list)


@dataclass
class SummaryResult:
    summary: str
    key_points: List[str]
    analysis: Optional[ContextAnalysis] = None
    source: str = "analysis"  # "analysis" or "fallback"


def _parse_json(text: str) -> dict:
    cleaned = _FENCE.sub("", text.strip())
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def split_summary_and_bullets(text: str, max_key_points: int) -> SummaryResult:
    """Split a plain-text summary into prose and ``- `` bullet lines."""
    prose: List[str] = []
    bullets: List[str] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        if _BULLET.match(line):
            bullets.append(_BULLET.sub("", line).strip())
        else:
            prose.append(line.strip())
    return SummaryResult(
        summary=" ".join(prose),
        key_points=[b for b in bullets if b][:max_key_points],
        source="fallback",
    )


class SummaryRegenerator:
    """
    Compresses conversation history into a summary and key points.

    Usage:
        regenerator = SummaryRegenerator(completion, max_key_points=5)
        result = await regenerator.regenerate(history, conversation_id)
        if result:
            store.update_context(conversation_id, summary=result.summary, key_points=result.key_points)
    """

    def __init__(self, completion, max_key_points: int = 5):
        """
        Initialize the regenerator.

        Args:
            completion: Service with ``complete(system_instruction, user_prompt)``
            max_key_points: Cap on bullet points kept
        """
        self.completion = completion
        self.max_key_points = max_key_points

    async def analyse(self, conversation: str, conversation_id: Optional[str] = None) -> ContextAnalysis:
        reply = await self.completion.complete(
            ANALYSIS_SYSTEM_PROMPT,
            CONVERSATION_ANALYSIS_PROMPT.format(conversation=conversation),
            conversation_id=conversation_id,
        )
        return ContextAnalysis.model_validate(_parse_json(reply))

    async def condense(self, analysis: ContextAnalysis, conversation_id: Optional[str] = None) -> CondensedSummary:
        reply = await self.completion.complete(
            ANALYSIS_SYSTEM_PROMPT,
            CONDENSE_SUMMARY_PROMPT.format(
                analysis=analysis.model_dump_json(indent=2),
                max_key_points=self.max_key_points,
            ),
            conversation_id=conversation_id,
        )
        condensed = CondensedSummary.model_validate(_parse_json(reply))
        if not condensed.summary.strip():
            raise ValueError("Empty summary")
        return condensed

    async def fallback(self, conversation: str, conversation_id: Optional[str] = None) -> Optional[SummaryResult]:
        reply = await self.completion.complete(
            LEGAL_SYSTEM_PROMPT,
            FALLBACK_SUMMARY_PROMPT.format(conversation=conversation, max_key_points=self.max_key_points),
            conversation_id=conversation_id,
        )
        result = split_summary_and_bullets(reply, self.max_key_points)
        if not result.summary and not result.key_points:
            return None
        return result

    async def regenerate(
        self,
        history: Sequence[ChatMessage],
        conversation_id: Optional[str] = None,
    ) -> Optional[SummaryResult]:
        """
        Produce a new summary for the given history.

        Returns:
            SummaryResult, or None when every attempt failed and the
            existing summary should be kept
        """
        if not history:
            return None
        conversation = format_history(history)

        try:
            analysis = await self.analyse(conversation, conversation_id)
            condensed = await self.condense(analysis, conversation_id)
            result = SummaryResult(
                summary=condensed.summary.strip(),
                key_points=[p.strip() for p in condensed.key_points if p.strip()][: self.max_key_points],
                analysis=analysis,
            )
            logger.debug(
                "Summary regenerated",
                conversation_id=conversation_id,
                key_points=len(result.key_points),
                topics=len(analysis.topics),
            )
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Structured summary failed, trying fallback", conversation_id=conversation_id, error=str(e))

        try:
            return await self.fallback(conversation, conversation_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Fallback summary failed, keeping previous summary", conversation_id=conversation_id, error=str(e))
            return None
