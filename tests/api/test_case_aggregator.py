"""
Tests for case-aware aggregation.

Tests verify:
- Cases appear in discovery order and never interleave
- Chunks are ordered by chunk_index within a case
- Summaries precede content chunks
- Duplicate hits are dropped
- Character budget truncation appends an explicit marker
"""

from api.models import SearchHit
from api.tools.case_aggregator import CaseAggregator


def hit(case_id, document_type, content, chunk_index=None, score=0.5, **metadata):
    payload = {"content": content, "document_type": document_type, **metadata}
    if case_id is not None:
        payload["case_id"] = case_id
    if chunk_index is not None:
        payload["chunk_index"] = chunk_index
    return SearchHit.from_payload(f"{case_id}-{document_type}-{chunk_index}", score, payload)


def test_chunks_sorted_within_case_and_cases_in_discovery_order():
    hits = [
        hit("A", "content", "A2", 2),
        hit("A", "content", "A0", 0),
        hit("B", "content", "B1", 1),
        hit("A", "content", "A1", 1),
        hit("B", "content", "B0", 0),
    ]

    context = CaseAggregator().aggregate(hits)

    assert [block.case_id for block in context.cases] == ["A", "B"]
    assert [c.content for c in context.cases[0].content_chunks] == ["A0", "A1", "A2"]
    assert [c.content for c in context.cases[1].content_chunks] == ["B0", "B1"]
    text = context.text
    assert text.index("A0") < text.index("A1") < text.index("A2") < text.index("B0") < text.index("B1")


def test_summary_precedes_content_and_supplies_header():
    hits = [
        hit("A", "content", "chunk text", 0),
        hit("A", "summary", "summary text", court="Okresný súd Trnava", case_number="2T/5/2021"),
    ]

    context = CaseAggregator().aggregate(hits)

    block = context.cases[0]
    assert block.metadata.court == "Okresný súd Trnava"
    assert context.text.index("Summary:") < context.text.index("Content:")
    assert "Court: Okresný súd Trnava" in context.text
    assert "Case Number: 2T/5/2021" in context.text
    assert "Judge: N/A" in context.text


def test_chunks_without_index_go_last():
    hits = [hit("A", "content", "unindexed"), hit("A", "content", "second", 1), hit("A", "content", "first", 0)]

    block = CaseAggregator().group(hits)[0]

    assert [c.content for c in block.content_chunks] == ["first", "second", "unindexed"]


def test_duplicates_dropped():
    hits = [hit("A", "content", "same", 0), hit("A", "content", "same", 0)]

    context = CaseAggregator().aggregate(hits)

    assert context.document_count == 1


def test_hits_without_case_id_are_standalone_blocks():
    hits = [
        SearchHit.from_payload("p1", 0.5, {"content": "loose one"}),
        SearchHit.from_payload("p2", 0.4, {"content": "loose two"}),
    ]

    blocks = CaseAggregator().group(hits)

    assert [b.case_id for b in blocks] == ["doc:p1", "doc:p2"]


def test_ranked_hits_sorted_by_score():
    hits = [hit("A", "content", "low", 0, score=0.2), hit("B", "content", "high", 0, score=0.9)]

    context = CaseAggregator().aggregate(hits)

    assert [h.content for h in context.hits] == ["high", "low"]


def test_within_budget_not_truncated():
    context = CaseAggregator(char_budget=10_000).aggregate([hit("A", "content", "short", 0)])

    assert context.truncated is False
    assert "context truncated" not in context.text


def test_over_budget_truncated_with_marker():
    hits = [hit(case, "content", case * 400, 0) for case in ("A", "B", "C")]

    context = CaseAggregator(char_budget=600).aggregate(hits)

    assert context.truncated is True
    body, marker = context.text.rsplit("\n\n", 1)
    assert len(body) <= 600
    assert marker == "[... context truncated: 2 of 3 case(s) not shown in full ...]"


def test_truncation_marker_counts_complete_cases():
    aggregator = CaseAggregator(char_budget=10_000)
    blocks = aggregator.group([hit(case, "content", case * 50, 0) for case in ("A", "B", "C")])
    first = aggregator.format_case(blocks[0], 1)
    aggregator.char_budget = len(first) + 10

    text, truncated = aggregator.render(blocks)

    assert truncated
    assert text.endswith("[... context truncated: 2 of 3 case(s) not shown in full ...]")


def test_empty_hits():
    context = CaseAggregator().aggregate([])

    assert context.is_empty
    assert context.text == ""
