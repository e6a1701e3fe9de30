"""Judgment ingestion into the Milvus collection used by retrieval.

Each court decision becomes:
- one ``summary`` record, taken from the export or generated by the
  completion service
- ``content`` records, one per chunk, numbered by ``chunk_index``

Every record carries ``case_id``, ``document_type`` and the case metadata so
summary-first retrieval can find the case and fetch its chunks.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import structlog
from langchain_text_splitters import RecursiveCharacterTextSplitter
from pydantic import ValidationError as PydanticValidationError

from api.composer.prompts import CASE_SUMMARY_PROMPT, LEGAL_SYSTEM_PROMPT
from api.llm.completion import CompletionService
from api.models import Judgment
from api.retrieval import CONTENT_TYPE, SUMMARY_TYPE, EmbeddingService, MilvusClient, build_filter_expression

logger = structlog.get_logger(__name__)

# Characters of the decision sent to the completion service for a summary.
SUMMARY_INPUT_CHARS = 12_000


@dataclass
class IngestResult:
    """What happened to one judgment."""

    case_id: str
    records: int = 0
    chunks: int = 0
    skipped: bool = False
    summary_generated: bool = False


@dataclass
class IngestReport:
    """Totals for a batch of judgments."""

    results: List[IngestResult] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ingested(self) -> int:
        return sum(1 for r in self.results if not r.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def records(self) -> int:
        return sum(r.records for r in self.results)


def record_id(case_id: str, document_type: str, index: int = 0) -> str:
    """Stable primary key, so re-ingesting a case replaces its records."""
    digest = hashlib.sha256(f"{case_id}:{document_type}:{index}".encode("utf-8")).hexdigest()
    return digest[:32]


def load_judgments(directory: Path, max_files: Optional[int] = None) -> Iterator[Tuple[Path, Any]]:
    """
    Yield ``(path, judgment)`` for each ``*.json`` file in ``directory``.

    A file that cannot be parsed yields its exception instead of a judgment
    so the caller can report it and carry on.
    """
    paths = sorted(Path(directory).glob("*.json"))
    if max_files is not None:
        paths = paths[:max_files]
    for path in paths:
        try:
            with open(path, "r", encoding="utf-8") as f:
                yield path, Judgment.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            yield path, e


class JudgmentIngestor:
    """
    Chunks, summarises, embeds and upserts court decisions.

    Usage:
        ingestor = JudgmentIngestor.from_settings(settings, store, embeddings, completion)
        await ingestor.prepare()
        result = await ingestor.ingest(judgment)
    """

    def __init__(
        self,
        store: MilvusClient,
        embeddings: EmbeddingService,
        completion: CompletionService,
        chunk_size: int = 4000,
        chunk_overlap: int = 200,
        batch_size: int = 100,
        concurrency: int = 5,
        dimension: int = 3072,
    ):
        self.store = store
        self.embeddings = embeddings
        self.completion = completion
        self.batch_size = batch_size
        self.dimension = dimension
        self.splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=["\n\n", "\n", " ", ""],
        )
        self._semaphore = asyncio.Semaphore(concurrency)

    @classmethod
    def from_settings(cls, settings, store, embeddings, completion) -> "JudgmentIngestor":
        return cls(
            store=store,
            embeddings=embeddings,
            completion=completion,
            chunk_size=settings.ingest_chunk_size,
            chunk_overlap=settings.ingest_chunk_overlap,
            batch_size=settings.ingest_batch_size,
            concurrency=settings.ingest_concurrency,
            dimension=settings.embedding_dimension,
        )

    async def prepare(self) -> bool:
        """Create the collection if it does not exist yet."""
        created = await self.store.ensure_collection(self.dimension)
        if created:
            logger.info("Collection ready", collection=self.store.collection, created=True)
        return created

    def chunk(self, text: str) -> List[str]:
        return [c for c in self.splitter.split_text(text) if c.strip()]

    async def summarize(self, judgment: Judgment) -> Tuple[str, bool]:
        """Return the summary text and whether it had to be generated."""
        if judgment.summary:
            return judgment.summary, False
        prompt = CASE_SUMMARY_PROMPT.format(text=judgment.content[:SUMMARY_INPUT_CHARS])
        summary = (await self.completion.complete(LEGAL_SYSTEM_PROMPT, prompt)).strip()
        return summary, True

    async def _embed(self, text: str) -> List[float]:
        async with self._semaphore:
            return await self.embeddings.embed(text)

    async def exists(self, case_id: str) -> bool:
        rows = await self.store.query(
            build_filter_expression({"case_id": case_id}),
            limit=1,
            output_fields=["case_id"],
        )
        return bool(rows)

    async def build_records(self, judgment: Judgment) -> Tuple[List[Dict[str, Any]], IngestResult]:
        chunks = self.chunk(judgment.content)
        summary, generated = await self.summarize(judgment)
        texts = [summary] + chunks
        vectors = await asyncio.gather(*(self._embed(text) for text in texts))

        metadata = judgment.metadata()
        total = len(chunks)
        records = [
            {
                **metadata,
                "id": record_id(judgment.case_id, SUMMARY_TYPE),
                "vector": vectors[0],
                "content": summary,
                "document_type": SUMMARY_TYPE,
                "total_chunks": total,
            }
        ]
        for index, (text, vector) in enumerate(zip(chunks, vectors[1:])):
            records.append(
                {
                    **metadata,
                    "id": record_id(judgment.case_id, CONTENT_TYPE, index),
                    "vector": vector,
                    "content": text,
                    "document_type": CONTENT_TYPE,
                    "chunk_index": index,
                    "total_chunks": total,
                }
            )
        result = IngestResult(case_id=judgment.case_id, chunks=total, summary_generated=generated)
        return records, result

    async def ingest(self, judgment: Judgment, force: bool = False) -> IngestResult:
        """
        Upsert one judgment.

        Args:
            judgment: Decision to index
            force: Re-ingest even when records for the case already exist

        Returns:
            IngestResult; ``skipped`` is set when the case was already indexed
        """
        if not force and await self.exists(judgment.case_id):
            logger.info("Case already indexed, skipping", case_id=judgment.case_id)
            return IngestResult(case_id=judgment.case_id, skipped=True)

        records, result = await self.build_records(judgment)
        for i in range(0, len(records), self.batch_size):
            result.records += await self.store.upsert(records[i:i + self.batch_size])

        logger.info(
            "Case ingested",
            case_id=judgment.case_id,
            chunks=result.chunks,
            records=result.records,
            summary_generated=result.summary_generated,
        )
        return result

    async def ingest_many(self, items, force: bool = False) -> IngestReport:
        """Ingest ``(source, judgment_or_error)`` pairs, recording failures by source."""
        report = IngestReport()
        for source, judgment in items:
            if isinstance(judgment, Exception):
                logger.error("Could not load judgment", source=str(source), error=str(judgment))
                report.failures[str(source)] = str(judgment)
                continue
            try:
                report.results.append(await self.ingest(judgment, force=force))
            except Exception as e:
                logger.error("Judgment ingestion failed", source=str(source), case_id=judgment.case_id, error=str(e), exc_info=True)
                report.failures[str(source)] = str(e)
        logger.info(
            "Ingestion finished",
            ingested=report.ingested,
            skipped=report.skipped,
            failed=len(report.failures),
            records=report.records,
        )
        return report
