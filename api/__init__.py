"""Lexcase API service.

This package contains the FastAPI application and the retrieval side of
the question answering pipeline.

Main components:
- main.py: FastAPI application factory and exception mapping
- models.py: Pydantic models for search payloads, requests and responses
- retrieval.py: Milvus/OpenAI adapters and the case-aware retrieval pipeline
- tools/case_aggregator.py: grouping and formatting of case material
- orchestrators/turn_orchestrator.py: one conversation turn end to end
"""

# Avoid importing the FastAPI app at package import time.
__all__ = []
