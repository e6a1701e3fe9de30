#!/usr/bin/env python3
"""
ingest_judgments.py - Index court decisions in the Milvus collection

Commands:
    init      Create the collection (VarChar ``id`` key, dynamic fields)
    ingest    Chunk, summarise, embed and upsert every *.json judgment in a directory
    preview   Print stored records as JSON

Usage:
    python scripts/ingest_judgments.py init
    python scripts/ingest_judgments.py ingest data/judgments [--force] [--max_files INT]
    python scripts/ingest_judgments.py preview [--limit INT] [--output FILE]

Configuration comes from the LEXCASE_* environment variables (or .env).
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

import structlog

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from api.ingestion import JudgmentIngestor, load_judgments
from api.llm.completion import OpenAICompletionService
from api.retrieval import EmbeddingClient, MilvusClient
from libs.common.log_config import configure_logging
from libs.common.settings import get_settings

logger = structlog.get_logger()


def build_ingestor(settings) -> JudgmentIngestor:
    return JudgmentIngestor.from_settings(
        settings,
        store=MilvusClient.from_settings(settings),
        embeddings=EmbeddingClient.from_settings(settings),
        completion=OpenAICompletionService.from_settings(settings),
    )


async def run_init(settings) -> int:
    created = await build_ingestor(settings).prepare()
    if not created:
        logger.info("Collection already exists", collection=settings.milvus_collection)
    return 0


async def run_ingest(settings, data_dir: Path, force: bool, max_files) -> int:
    if not data_dir.is_dir():
        logger.error("Data directory not found", path=str(data_dir))
        return 1
    ingestor = build_ingestor(settings)
    await ingestor.prepare()
    report = await ingestor.ingest_many(load_judgments(data_dir, max_files=max_files), force=force)
    return 1 if report.failures else 0


async def run_preview(settings, limit: int, output) -> int:
    rows = await MilvusClient.from_settings(settings).query('id != ""', limit=limit)
    text = json.dumps(rows, ensure_ascii=False, indent=2)
    if output:
        Path(output).write_text(text, encoding="utf-8")
        logger.info("Preview written", path=output, records=len(rows))
    else:
        print(text)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Index court decisions in Milvus")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create the collection if it does not exist")

    ingest = subparsers.add_parser("ingest", help="Ingest a directory of judgment JSON files")
    ingest.add_argument("data_dir", type=Path, help="Directory containing *.json judgments")
    ingest.add_argument("--force", action="store_true", help="Re-ingest cases that are already indexed")
    ingest.add_argument("--max_files", type=int, default=None, help="Maximum number of files to process")

    preview = subparsers.add_parser("preview", help="Print stored records")
    preview.add_argument("--limit", type=int, default=10, help="Number of records to fetch")
    preview.add_argument("--output", default=None, help="Write the records to this file instead of stdout")

    args = parser.parse_args()
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)

    if args.command == "init":
        return asyncio.run(run_init(settings))
    if args.command == "ingest":
        return asyncio.run(run_ingest(settings, args.data_dir, args.force, args.max_files))
    return asyncio.run(run_preview(settings, args.limit, args.output))


if __name__ == "__main__":
    sys.exit(main())
