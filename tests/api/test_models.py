"""Tests for search payload parsing into case metadata."""

from api.models import CaseMetadata, SearchHit


def test_snake_case_payload():
    metadata = CaseMetadata.model_validate({
        "case_id": "4013200001",
        "case_number": "3T/115/2023",
        "court": "Okresný súd Bratislava I",
        "chunk_index": "2",
        "document_type": "content",
        "unexpected": "ignored",
    })

    assert metadata.case_id == "4013200001"
    assert metadata.case_number == "3T/115/2023"
    assert metadata.chunk_index == 2
    assert metadata.document_type == "content"


def test_slovak_registry_keys():
    metadata = CaseMetadata.model_validate({
        "Identifikačné číslo spisu": 4013200001,
        "Spisová značka": "3T/115/2023",
        "Súd": "Krajský súd v Košiciach",
        "Dátum rozhodnutia": "12.05.2023",
        "Sudca": "JUDr. Novák",
        "Názov": "Rozsudok",
    })

    assert metadata.case_id == "4013200001"
    assert metadata.case_number == "3T/115/2023"
    assert metadata.court == "Krajský súd v Košiciach"
    assert metadata.decision_date == "12.05.2023"
    assert metadata.judge == "JUDr. Novák"
    assert metadata.title == "Rozsudok"


def test_camel_case_keys():
    metadata = CaseMetadata.model_validate({"caseId": "A", "caseNumber": "1C/2/2020", "chunkIndex": 3, "documentType": "summary"})

    assert metadata.case_id == "A"
    assert metadata.chunk_index == 3
    assert metadata.document_type == "summary"


def test_document_type_normalization():
    assert CaseMetadata.model_validate({"type": "conclusion"}).document_type == "summary"
    assert CaseMetadata.model_validate({"document_type": "SUMMARY"}).document_type == "summary"
    assert CaseMetadata.model_validate({"document_type": "appendix"}).document_type == "content"
    assert CaseMetadata.model_validate({}).document_type == "content"


def test_non_numeric_chunk_index_is_absent():
    assert CaseMetadata.model_validate({"chunk_index": "first"}).chunk_index is None


def test_blank_values_become_none():
    assert CaseMetadata.model_validate({"judge": "  "}).judge is None


def test_search_hit_from_nested_payload():
    hit = SearchHit.from_payload(
        17,
        0.83,
        {"pageContent": "Obžalovaný sa dopustil...", "metadata": {"caseId": "B", "chunk_index": 0}},
    )

    assert hit.id == "17"
    assert hit.score == 0.83
    assert hit.content == "Obžalovaný sa dopustil..."
    assert hit.metadata.case_id == "B"
    assert hit.metadata.chunk_index == 0


def test_search_hit_without_content():
    hit = SearchHit.from_payload(None, None, {"case_id": "C"})

    assert hit.id == ""
    assert hit.content == ""
    assert hit.score == 0.0
