"""Pydantic models for the Lexcase API and retrieval pipeline.

This module defines the case metadata record, the search hit and aggregated
context types produced by retrieval, and the request/response models used by
the HTTP endpoints.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Payload keys the index has used for the text of a record, in priority order.
CONTENT_KEYS = ("content", "text", "pageContent", "obsah")


class CaseMetadata(BaseModel):
    """Fixed metadata record for a case document.

    Accepts snake_case, camelCase and the Slovak court-registry keys used by
    the original index. Unknown keys are ignored.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    case_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("case_id", "caseId", "Identifikačné číslo spisu"),
    )
    case_number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("case_number", "caseNumber", "Spisová značka"),
    )
    court: Optional[str] = Field(default=None, validation_alias=AliasChoices("court", "Súd"))
    decision_date: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("decision_date", "decisionDate", "Dátum rozhodnutia"),
    )
    judge: Optional[str] = Field(default=None, validation_alias=AliasChoices("judge", "Sudca"))
    url: Optional[str] = Field(default=None, validation_alias=AliasChoices("url", "URL"))
    title: Optional[str] = Field(default=None, validation_alias=AliasChoices("title", "Názov"))
    ecli: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ecli", "ECLI (Európsky identifikátor judikatúry)"),
    )
    chunk_index: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("chunk_index", "chunkIndex"),
    )
    document_type: Literal["summary", "content"] = Field(
        default="content",
        validation_alias=AliasChoices("document_type", "documentType", "doc_type", "type"),
    )

    @field_validator("case_id", "case_number", "court", "decision_date", "judge", "url", "title", "ecli", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Optional[str]:
        """Coerce scalar payload values to text; blank becomes None."""
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("chunk_index", mode="before")
    @classmethod
    def parse_chunk_index(cls, v: Any) -> Optional[int]:
        """Non-numeric chunk indices are treated as absent."""
        if v is None or isinstance(v, bool):
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None

    @field_validator("document_type", mode="before")
    @classmethod
    def normalize_document_type(cls, v: Any) -> str:
        """Map ``summary``/``conclusion`` to summary, anything else to content."""
        if v is not None and str(v).strip().lower() in ("summary", "conclusion"):
            return "summary"
        return "content"


class SearchHit(BaseModel):
    """One scored record returned by the vector search service."""

    id: str = ""
    content: str
    score: float = 0.0
    metadata: CaseMetadata = Field(default_factory=CaseMetadata)

    @classmethod
    def from_payload(cls, point_id: Any, score: float, payload: Optional[Dict[str, Any]]) -> "SearchHit":
        """Build a hit from a raw search payload.

        Handles flat payloads as well as LangChain-style payloads that nest
        the metadata under ``metadata``.
        """
        payload = dict(payload or {})
        nested = payload.pop("metadata", None)
        fields: Dict[str, Any] = {**nested, **payload} if isinstance(nested, dict) else payload
        content = ""
        for key in CONTENT_KEYS:
            value = fields.get(key)
            if isinstance(value, str) and value.strip():
                content = value
                break
        return cls(
            id=str(point_id) if point_id is not None else "",
            content=content,
            score=float(score or 0.0),
            metadata=CaseMetadata.model_validate(fields),
        )


class CaseBlock(BaseModel):
    """All material retrieved for one case, in output order."""

    case_id: str
    metadata: CaseMetadata
    summaries: List[SearchHit] = Field(default_factory=list)
    content_chunks: List[SearchHit] = Field(default_factory=list)

    @property
    def document_count(self) -> int:
        return len(self.summaries) + len(self.content_chunks)


class AggregatedContext(BaseModel):
    """Result of one retrieval call: case blocks plus the bounded context text."""

    cases: List[CaseBlock] = Field(default_factory=list)
    text: str = ""
    truncated: bool = False
    hits: List[SearchHit] = Field(default_factory=list, description="Hits ranked by search score")

    @property
    def document_count(self) -> int:
        return sum(case.document_count for case in self.cases)

    @property
    def is_empty(self) -> bool:
        return self.document_count == 0


class Judgment(BaseModel):
    """A court decision as exported by the court registry, ready for ingestion."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    case_id: str = Field(validation_alias=AliasChoices("case_id", "caseId", "Identifikačné číslo spisu"))
    content: str = Field(validation_alias=AliasChoices("content", "text", "Obsah"))
    summary: Optional[str] = Field(default=None, validation_alias=AliasChoices("summary", "Zhrnutie"))
    title: Optional[str] = Field(default=None, validation_alias=AliasChoices("title", "Názov"))
    url: Optional[str] = Field(default=None, validation_alias=AliasChoices("url", "Url", "URL"))
    court: Optional[str] = Field(default=None, validation_alias=AliasChoices("court", "Súd"))
    case_number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("case_number", "caseNumber", "Spisová značka"),
    )
    decision_date: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("decision_date", "decisionDate", "Dátum rozhodnutia"),
    )
    judge: Optional[str] = Field(default=None, validation_alias=AliasChoices("judge", "Sudca"))
    ecli: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ecli", "ECLI (Európsky identifikátor judikatúry)"),
    )

    @field_validator("case_id", "content", mode="before")
    @classmethod
    def required_text(cls, v: Any) -> str:
        if v is None or not str(v).strip():
            raise ValueError("must not be empty")
        return str(v).strip()

    @field_validator("summary", "title", "url", "court", "case_number", "decision_date", "judge", "ecli", mode="before")
    @classmethod
    def optional_text(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    def metadata(self) -> Dict[str, str]:
        """Case fields stored on every record of this judgment (blank ones omitted)."""
        fields = {
            "case_id": self.case_id,
            "title": self.title,
            "url": self.url,
            "court": self.court,
            "case_number": self.case_number,
            "decision_date": self.decision_date,
            "judge": self.judge,
            "ecli": self.ecli,
        }
        return {key: value for key, value in fields.items() if value}


class TurnRequest(BaseModel):
    """Request model for one conversation turn."""

    question: str = Field(..., description="User question", examples=["Aký trest hrozí za držanie drog?"])
    user_id: Optional[str] = Field(default=None, description="Rate-limit identity; defaults to the client address")


class TurnResponse(BaseModel):
    """Response model for one conversation turn."""

    conversation_id: str
    answer: str
    outcome: Literal["answered", "no_documents", "refused", "failed"] = "answered"
    processing_time_ms: float = 0.0


class ConversationResponse(BaseModel):
    """Read-only view of a conversation's state."""

    conversation_id: str
    history: List[Dict[str, str]]
    previous_questions: List[str]
    last_response: str
    summary: str
    key_points: List[str]
    timestamp: float


class UsageResponse(BaseModel):
    """Token usage and cost accumulated by a conversation."""

    conversation_id: str
    calls: int
    input_tokens: int
    output_tokens: int
    cost_usd: float
    duration_ms: float


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""

    status: Literal["healthy", "unhealthy", "ready", "not_ready"]
    service: str = "api"
    version: str = "0.1.0"
    timestamp: float = Field(default_factory=time.time)
    details: Dict[str, str] | None = None
