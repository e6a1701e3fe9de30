"""Case-aware merging of search hits into a bounded context string.

Hits are grouped by case id in the order each case was first seen. Within a
case, summaries come first and content chunks follow in ascending
``chunk_index`` order, so a case block always reads top to bottom and never
mixes text from another case.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from api.models import AggregatedContext, CaseBlock, CaseMetadata, SearchHit

logger = structlog.get_logger(__name__)

DEFAULT_CHAR_BUDGET = 10_000
TRUNCATION_MARKER = "[... context truncated: {omitted} of {total} case(s) not shown in full ...]"
NOT_AVAILABLE = "N/A"


def _chunk_sort_key(hit: SearchHit) -> Tuple[int, int]:
    index = hit.metadata.chunk_index
    # Chunks without an index go last, keeping their arrival order.
    return (1, 0) if index is None else (0, index)


def _clean(text: str) -> str:
    return "\n".join(line.strip() for line in text.splitlines() if line.strip())


class CaseAggregator:
    """Groups, orders, formats and truncates retrieved case material."""

    def __init__(self, char_budget: int = DEFAULT_CHAR_BUDGET):
        self.char_budget = char_budget

    def group(self, hits: Iterable[SearchHit]) -> List[CaseBlock]:
        """Group hits into case blocks in discovery order, dropping duplicates."""
        blocks: Dict[str, CaseBlock] = {}
        seen: Dict[str, set] = {}

        for position, hit in enumerate(hits):
            case_id = hit.metadata.case_id or f"doc:{hit.id or position}"
            block = blocks.get(case_id)
            if block is None:
                block = CaseBlock(case_id=case_id, metadata=hit.metadata)
                blocks[case_id] = block
                seen[case_id] = set()

            fingerprint = (hit.metadata.document_type, hit.metadata.chunk_index, hit.content)
            if fingerprint in seen[case_id]:
                continue
            seen[case_id].add(fingerprint)

            if hit.metadata.document_type == "summary":
                block.summaries.append(hit)
            else:
                block.content_chunks.append(hit)

            # Summaries usually carry the richest header metadata.
            if hit.metadata.document_type == "summary" and block.metadata.document_type != "summary":
                block.metadata = hit.metadata

        for block in blocks.values():
            block.content_chunks.sort(key=_chunk_sort_key)

        return list(blocks.values())

    @staticmethod
    def format_header(metadata: CaseMetadata) -> str:
        return "\n".join([
            f"Court: {metadata.court or NOT_AVAILABLE}",
            f"Case Number: {metadata.case_number or NOT_AVAILABLE}",
            f"Decision Date: {metadata.decision_date or NOT_AVAILABLE}",
            f"Judge: {metadata.judge or NOT_AVAILABLE}",
            f"URL: {metadata.url or NOT_AVAILABLE}",
        ])

    def format_case(self, block: CaseBlock, number: int) -> str:
        """Render one case: header, summary text, then ordered content chunks."""
        title = block.metadata.title or block.metadata.case_number or block.case_id
        parts = [f"=== Case {number}: {title} ===", self.format_header(block.metadata)]

        summary_text = "\n\n".join(_clean(hit.content) for hit in block.summaries if hit.content.strip())
        if summary_text:
            parts.append(f"Summary:\n{summary_text}")

        chunk_texts = []
        for hit in block.content_chunks:
            if not hit.content.strip():
                continue
            label = f"[Chunk {hit.metadata.chunk_index}]" if hit.metadata.chunk_index is not None else "[Chunk]"
            chunk_texts.append(f"{label}\n{_clean(hit.content)}")
        if chunk_texts:
            parts.append("Content:\n" + "\n\n".join(chunk_texts))

        return "\n\n".join(parts)

    def render(self, blocks: List[CaseBlock]) -> Tuple[str, bool]:
        """
        Concatenate case blocks and apply the character budget.

        Returns:
            Tuple of (context text, whether it was truncated)
        """
        rendered = [self.format_case(block, i) for i, block in enumerate(blocks, start=1)]
        separator = "\n\n"
        text = separator.join(rendered)
        if len(text) <= self.char_budget:
            return text, False

        # Count the blocks that end past the budget so the marker says what was lost.
        offset = 0
        complete = 0
        for i, block_text in enumerate(rendered):
            offset += len(block_text) + (len(separator) if i else 0)
            if offset > self.char_budget:
                break
            complete += 1
        marker = TRUNCATION_MARKER.format(omitted=len(rendered) - complete, total=len(rendered))

        logger.warning(
            "Context exceeds character budget, truncating",
            context_chars=len(text),
            char_budget=self.char_budget,
            cases_cut=len(rendered) - complete,
        )
        return f"{text[: self.char_budget].rstrip()}\n\n{marker}", True

    def aggregate(self, hits: Iterable[SearchHit], ranked: Optional[List[SearchHit]] = None) -> AggregatedContext:
        """Group and render hits into an ``AggregatedContext``."""
        hits = list(hits)
        blocks = self.group(hits)
        text, truncated = self.render(blocks) if blocks else ("", False)
        ranked_hits = ranked if ranked is not None else sorted(hits, key=lambda h: h.score, reverse=True)
        return AggregatedContext(cases=blocks, text=text, truncated=truncated, hits=ranked_hits)
