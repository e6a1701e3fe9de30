"""Milvus-based case-aware retrieval for Lexcase.

This module implements the retrieval pipeline: query expansion through the
completion service, summary-first vector search to discover relevant cases,
concurrent per-case chunk fetching, and case-ordered context assembly.
The Milvus Cloud HTTP v2 API and the OpenAI embeddings endpoint are reached
with per-request ``httpx`` clients.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx
import structlog

from api.composer.prompts import (
    CLASSIFY_DOMAIN_PROMPT,
    DEFAULT_DOMAIN,
    IS_LEGAL_QUESTION_PROMPT,
    LEGAL_DOMAINS,
    LEGAL_SYSTEM_PROMPT,
    NEEDS_RETRIEVAL_PROMPT,
    NO_RETRIEVAL_REPLY,
    NOT_LEGAL_REPLY,
    QUERY_EXPANSION_PROMPT,
    AnswerMode,
    build_answer_prompt,
    detect_answer_mode,
    format_history,
    parse_domain,
    parse_yes_no,
)
from api.llm.completion import CompletionService
from api.models import AggregatedContext, SearchHit
from api.tools.case_aggregator import CaseAggregator
from libs.caching.retrieval_cache import RetrievalCache
from libs.common.errors import NoRelevantDocuments, ServiceTimeout, TransientServiceError

logger = structlog.get_logger(__name__)

SUMMARY_TYPE = "summary"
CONTENT_TYPE = "content"

OUTPUT_FIELDS = [
    "content",
    "case_id",
    "case_number",
    "court",
    "decision_date",
    "judge",
    "url",
    "title",
    "ecli",
    "chunk_index",
    "document_type",
]


@dataclass
class ScoredPoint:
    """Raw record returned by a vector search service."""

    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


class VectorSearchService(Protocol):
    async def search(
        self,
        vector: Sequence[float],
        filter: Optional[Dict[str, Any]] = None,
        limit: int = 5,
    ) -> List[ScoredPoint]:
        ...


class EmbeddingService(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


def build_filter_expression(predicate: Optional[Dict[str, Any]]) -> Optional[str]:
    """Render ``{"case_id": "X", "document_type": "content"}`` as a Milvus boolean expression."""
    if not predicate:
        return None
    clauses = []
    for key, value in predicate.items():
        if isinstance(value, (list, tuple, set)):
            rendered = ", ".join(json.dumps(v) for v in value)
            clauses.append(f"{key} in [{rendered}]")
        else:
            clauses.append(f"{key} == {json.dumps(value)}")
    return " and ".join(clauses)


class MilvusClient:
    """Milvus Cloud HTTP API client for filtered vector search."""

    def __init__(
        self,
        endpoint: Optional[str],
        token: Optional[str],
        collection: str,
        timeout_seconds: float = 30.0,
        output_fields: Optional[List[str]] = None,
    ):
        self.collection = collection
        self.timeout_seconds = timeout_seconds
        self.output_fields = output_fields or OUTPUT_FIELDS
        self.base_url = self._base_url(endpoint) if endpoint else None
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @classmethod
    def from_settings(cls, settings) -> "MilvusClient":
        return cls(
            endpoint=settings.milvus_endpoint,
            token=settings.milvus_token,
            collection=settings.milvus_collection,
            timeout_seconds=settings.search_timeout_seconds,
        )

    @staticmethod
    def _base_url(endpoint: str) -> str:
        # Milvus Cloud format: https://in03-xxx.api.gcp-us-west1.zillizcloud.com:443
        base = endpoint.rstrip("/").replace(":443", "").replace(":19530", "")
        if not base.endswith("/v2/vectordb"):
            base += "/v2/vectordb"
        return base

    async def _post(self, path: str, payload: Dict[str, Any], operation: str) -> Dict[str, Any]:
        """POST to the v2 API and return the decoded body; any failure is transient."""
        if not self.base_url:
            raise TransientServiceError("Milvus endpoint not configured", service="search")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(f"{self.base_url}{path}", headers=self.headers, json=payload)
        except httpx.TimeoutException as e:
            raise ServiceTimeout(f"Milvus {operation} timed out after {self.timeout_seconds}s", service="search") from e
        except httpx.HTTPError as e:
            raise TransientServiceError(f"Milvus {operation} failed: {e}", service="search") from e

        if response.status_code != 200:
            logger.error("Milvus request failed", operation=operation, status=response.status_code, response=response.text[:200])
            raise TransientServiceError(f"Milvus {operation} returned HTTP {response.status_code}", service="search")

        data = response.json()
        if data.get("code", 0) != 0:
            logger.error("Milvus request rejected", operation=operation, code=data.get("code"), message=data.get("message"))
            raise TransientServiceError(f"Milvus {operation} error {data.get('code')}", service="search")
        return data

    async def has_collection(self) -> bool:
        data = await self._post("/collections/has", {"collectionName": self.collection}, operation="has_collection")
        return bool(data.get("data", {}).get("has"))

    async def create_collection(self, dimension: int, metric_type: str = "COSINE") -> None:
        """
        Create the collection with a string primary key and dynamic fields.

        Case metadata lives in dynamic fields so records can carry whatever
        the registry export provides.
        """
        payload = {
            "collectionName": self.collection,
            "dimension": dimension,
            "metricType": metric_type,
            "idType": "VarChar",
            "autoID": False,
            "primaryFieldName": "id",
            "vectorFieldName": "vector",
            "params": {"max_length": 64, "enableDynamicField": True},
        }
        await self._post("/collections/create", payload, operation="create_collection")
        logger.info("Milvus collection created", collection=self.collection, dimension=dimension)

    async def ensure_collection(self, dimension: int) -> bool:
        """Create the collection if missing. Returns True when it was created."""
        if await self.has_collection():
            return False
        await self.create_collection(dimension)
        return True

    async def upsert(self, records: List[Dict[str, Any]]) -> int:
        """Insert or replace records by primary key; returns the upserted count."""
        if not records:
            return 0
        data = await self._post(
            "/entities/upsert",
            {"collectionName": self.collection, "data": records},
            operation="upsert",
        )
        return int(data.get("data", {}).get("upsertCount", len(records)))

    async def query(
        self,
        expression: str,
        limit: int = 10,
        offset: int = 0,
        output_fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Scalar query by boolean expression (no vector)."""
        payload = {
            "collectionName": self.collection,
            "filter": expression,
            "limit": limit,
            "offset": offset,
            "outputFields": output_fields or self.output_fields,
        }
        data = await self._post("/entities/query", payload, operation="query")
        return list(data.get("data", []))

    async def search(
        self,
        vector: Sequence[float],
        filter: Optional[Dict[str, Any]] = None,
        limit: int = 5,
    ) -> List[ScoredPoint]:
        payload: Dict[str, Any] = {
            "collectionName": self.collection,
            "data": [list(vector)],
            "limit": limit,
            "outputFields": self.output_fields,
        }
        expression = build_filter_expression(filter)
        if expression:
            payload["filter"] = expression

        data = await self._post("/entities/search", payload, operation="search")

        points = []
        for hit in data.get("data", []):
            hit = dict(hit)
            point_id = hit.pop("id", hit.get("chunk_id", ""))
            score = float(hit.pop("distance", hit.pop("score", 0.0)))
            points.append(ScoredPoint(id=str(point_id), score=score, payload=hit))
        return points


class EmbeddingClient:
    """OpenAI client for generating embeddings."""

    def __init__(self, api_key: Optional[str], model: str = "text-embedding-3-large", timeout_seconds: float = 10.0):
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings) -> "EmbeddingClient":
        return cls(
            api_key=settings.openai_api_key,
            model=settings.openai_embedding_model,
            timeout_seconds=settings.embedding_timeout_seconds,
        )

    async def embed(self, text: str) -> List[float]:
        """Get embedding for text using OpenAI API."""
        if not self.api_key:
            raise TransientServiceError("OpenAI API key not configured", service="embedding")
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    "https://api.openai.com/v1/embeddings",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "input": text[:8000],  # Truncate to avoid token limits
                        "encoding_format": "float",
                    },
                )
        except httpx.TimeoutException as e:
            raise ServiceTimeout("Embedding request timed out", service="embedding") from e
        except httpx.HTTPError as e:
            raise TransientServiceError(f"Embedding request failed: {e}", service="embedding") from e

        if response.status_code != 200:
            logger.error("OpenAI embedding failed", status=response.status_code, response=response.text[:200])
            raise TransientServiceError(f"Embedding returned HTTP {response.status_code}", service="embedding")

        return response.json()["data"][0]["embedding"]


class RetrievalPipeline:
    """
    Turns a question into case-grouped document context and an answer.

    Usage:
        pipeline = RetrievalPipeline(completion, milvus, embeddings)
        context = await pipeline.search("penalty for possession", conversation_id)
        answer = await pipeline.answer_with_context(question, history, conversation_id)
    """

    def __init__(
        self,
        completion: CompletionService,
        vector_search: VectorSearchService,
        embeddings: EmbeddingService,
        aggregator: Optional[CaseAggregator] = None,
        cache: Optional[RetrievalCache] = None,
        summary_limit: int = 3,
        chunks_per_case: int = 5,
        max_cases: int = 5,
        excerpt_chars: int = 300,
    ):
        self.completion = completion
        self.vector_search = vector_search
        self.embeddings = embeddings
        self.aggregator = aggregator or CaseAggregator()
        self.cache = cache if cache is not None else RetrievalCache()
        self.summary_limit = summary_limit
        self.chunks_per_case = chunks_per_case
        self.max_cases = max_cases
        self.excerpt_chars = excerpt_chars

    @classmethod
    def from_settings(cls, settings, completion, vector_search, embeddings) -> "RetrievalPipeline":
        return cls(
            completion=completion,
            vector_search=vector_search,
            embeddings=embeddings,
            aggregator=CaseAggregator(char_budget=settings.retrieval_char_budget),
            cache=RetrievalCache(
                ttl_seconds=settings.retrieval_cache_ttl_seconds,
                max_documents=settings.retrieval_cache_size,
            ),
            summary_limit=settings.summary_search_limit,
            chunks_per_case=settings.chunks_per_case,
            max_cases=settings.max_cases,
        )

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def build_search_query(self, query: str, conversation_id: str) -> str:
        """Prefix follow-up searches with an excerpt of the previous turn's documents."""
        excerpt = self.cache.excerpt(conversation_id, max_chars=self.excerpt_chars)
        if not excerpt:
            return query
        return f"{query}\n\nPrevious context: {excerpt}"

    async def expand_query(self, query: str, conversation_id: str) -> str:
        """Add legal terminology to the query. Falls back to the original on failure."""
        try:
            expanded = await self.completion.complete(
                LEGAL_SYSTEM_PROMPT,
                QUERY_EXPANSION_PROMPT.format(query=query),
                conversation_id=conversation_id,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Query expansion failed, using original query", error=str(e))
            return query
        return expanded.strip() or query

    async def _search_hits(self, vector: Sequence[float], filter: Optional[Dict[str, Any]], limit: int) -> List[SearchHit]:
        points = await self.vector_search.search(vector, filter=filter, limit=limit)
        return [SearchHit.from_payload(p.id, p.score, p.payload) for p in points]

    @staticmethod
    def _case_ids(hits: List[SearchHit]) -> List[str]:
        ordered: List[str] = []
        for hit in hits:
            case_id = hit.metadata.case_id
            if case_id and case_id not in ordered:
                ordered.append(case_id)
        return ordered

    async def discover_cases(self, vector: Sequence[float]) -> Tuple[List[str], List[SearchHit]]:
        """
        Find candidate cases, summaries first.

        Returns:
            Tuple of (case ids in discovery order, hits used for discovery)
        """
        hits = await self._search_hits(vector, {"document_type": SUMMARY_TYPE}, self.summary_limit)
        case_ids = self._case_ids(hits)
        if not case_ids:
            logger.info("No cases from summary search, retrying unfiltered")
            hits = await self._search_hits(vector, None, self.summary_limit)
            case_ids = self._case_ids(hits)
        return case_ids[: self.max_cases], hits

    async def _fetch_case(self, case_id: str, vector: Sequence[float], need_summary: bool) -> List[SearchHit]:
        fetches = [self._search_hits(vector, {"case_id": case_id, "document_type": CONTENT_TYPE}, self.chunks_per_case)]
        if need_summary:
            fetches.append(self._search_hits(vector, {"case_id": case_id, "document_type": SUMMARY_TYPE}, 1))
        results = await asyncio.gather(*fetches)
        # Summary (if fetched) goes first so it heads the case block.
        return [hit for group in reversed(results) for hit in group]

    async def fetch_cases(
        self, case_ids: List[str], vector: Sequence[float], known_summaries: set
    ) -> Dict[str, List[SearchHit]]:
        """Fetch every case concurrently. A failing case contributes no documents."""
        results = await asyncio.gather(
            *(self._fetch_case(case_id, vector, case_id not in known_summaries) for case_id in case_ids),
            return_exceptions=True,
        )
        fetched: Dict[str, List[SearchHit]] = {}
        for case_id, result in zip(case_ids, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Case fetch failed, skipping case", case_id=case_id, error=str(result))
                fetched[case_id] = []
            else:
                fetched[case_id] = result
        return fetched

    async def search(self, query: str, conversation_id: str) -> AggregatedContext:
        """
        Retrieve case material for a query.

        Raises:
            NoRelevantDocuments: Neither search produced any document
            TransientServiceError: Embedding or discovery search failed
        """
        start = time.time()
        search_query = self.build_search_query(query, conversation_id)
        expanded = await self.expand_query(search_query, conversation_id)
        vector = await self.embeddings.embed(expanded)

        case_ids, discovery_hits = await self.discover_cases(vector)
        known_summaries = {
            h.metadata.case_id for h in discovery_hits if h.metadata.document_type == SUMMARY_TYPE and h.metadata.case_id
        }
        fetched = await self.fetch_cases(case_ids, vector, known_summaries)

        ordered_hits: List[SearchHit] = []
        for case_id in case_ids:
            ordered_hits.extend(h for h in discovery_hits if h.metadata.case_id == case_id)
            ordered_hits.extend(fetched.get(case_id, []))
        if not case_ids:
            # Hits without any case id are still usable as standalone documents.
            ordered_hits = [h for h in discovery_hits if h.content.strip()]

        context = self.aggregator.aggregate(ordered_hits)
        if context.is_empty:
            logger.info("No relevant documents found", conversation_id=conversation_id, query=query[:100])
            raise NoRelevantDocuments()

        self.cache.put(conversation_id, context.hits)
        logger.info(
            "Retrieval completed",
            conversation_id=conversation_id,
            cases=len(context.cases),
            documents=context.document_count,
            context_chars=len(context.text),
            truncated=context.truncated,
            duration_ms=round((time.time() - start) * 1000, 2),
        )
        return context

    # ------------------------------------------------------------------
    # Answering
    # ------------------------------------------------------------------

    async def _safe_complete(self, prompt: str, conversation_id: str, check: str) -> Optional[str]:
        try:
            return await self.completion.complete(LEGAL_SYSTEM_PROMPT, prompt, conversation_id=conversation_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Classification check failed, using default", check=check, error=str(e))
            return None

    async def is_legal_question(self, question: str, conversation_id: str) -> bool:
        reply = await self._safe_complete(IS_LEGAL_QUESTION_PROMPT.format(question=question), conversation_id, "is_legal")
        return parse_yes_no(reply) if reply is not None else False

    async def classify_domain(self, question: str, conversation_id: str) -> str:
        prompt = CLASSIFY_DOMAIN_PROMPT.format(
            domains="\n".join(f"{i}. {d}" for i, d in enumerate(LEGAL_DOMAINS, start=1)),
            question=question,
        )
        reply = await self._safe_complete(prompt, conversation_id, "domain")
        return parse_domain(reply) if reply is not None else DEFAULT_DOMAIN

    async def needs_retrieval(self, question: str, conversation_id: str) -> bool:
        reply = await self._safe_complete(NEEDS_RETRIEVAL_PROMPT.format(question=question), conversation_id, "needs_retrieval")
        return parse_yes_no(reply) if reply is not None else False

    async def answer_with_context(
        self,
        question: str,
        history: Sequence[Any],
        conversation_id: str,
        mode: Optional[AnswerMode] = None,
    ) -> str:
        """
        Answer a question from retrieved case law.

        Returns a fixed reply without retrieval when the question is not legal
        or does not need documents.

        Raises:
            NoRelevantDocuments: Retrieval found nothing
            TransientServiceError: Search or final completion failed
        """
        is_legal, domain, retrieval_needed = await asyncio.gather(
            self.is_legal_question(question, conversation_id),
            self.classify_domain(question, conversation_id),
            self.needs_retrieval(question, conversation_id),
        )
        logger.info(
            "Question classified",
            conversation_id=conversation_id,
            is_legal=is_legal,
            domain=domain,
            needs_retrieval=retrieval_needed,
        )
        if not is_legal:
            return NOT_LEGAL_REPLY
        if not retrieval_needed:
            return NO_RETRIEVAL_REPLY

        context = await self.search(question, conversation_id)
        mode = mode or detect_answer_mode(question)
        prompt = build_answer_prompt(
            question=question,
            history=format_history(history),
            context=context.text,
            domain=domain,
            mode=mode,
        )
        return await self.completion.complete(LEGAL_SYSTEM_PROMPT, prompt, conversation_id=conversation_id)
