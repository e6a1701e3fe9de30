"""Lexcase shared libraries.

This package contains reusable components:
- common: settings, errors, logging, retry and usage tracking
- memory: conversation state, token estimates, context window and summaries
- caching: per-conversation retrieval cache
- models: pydantic models for conversation state
"""
