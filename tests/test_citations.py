from __future__ import annotations

from studyrag.citations.parsing import (
    MISSING_DOCUMENT_ERROR,
    CitationStreamTracker,
    assign_citation_numbers,
    citation_label,
    citation_map_to_json,
    citation_positions,
    extract_citations_from_content,
    render_citations,
    sanitize_citation_map,
    scan_citation_markers,
    validate_citation_map,
    validate_citations_against_documents,
)
from studyrag.models import Citation, SearchResult

DOCUMENTS = {"Interview-03.pdf": "doc-3", "Interview-01.pdf": "doc-1", "Survey.xlsx": "doc-s"}


def _result(document_id: str, name: str) -> SearchResult:
    return SearchResult(chunk_id=f"{document_id}-0", document_id=document_id, document_name=name, content="...", similarity=0.8, chunk_index=0)


def test_scan_finds_markers_with_spans():
    text = "Users churn^[Interview-03.pdf] and ^[ Survey.xlsx ] agrees."
    markers = scan_citation_markers(text)
    assert [m.document_name for m in markers] == ["Interview-03.pdf", "Survey.xlsx"]
    assert text[markers[0].start : markers[0].end] == "^[Interview-03.pdf]"


def test_numbers_follow_first_appearance():
    text = "A^[Interview-03.pdf] B^[Interview-01.pdf] C^[Interview-03.pdf]"
    citation_map = assign_citation_numbers(scan_citation_markers(text), DOCUMENTS)
    assert citation_map == {
        "1": Citation(citation_number=1, document_id="doc-3", document_name="Interview-03.pdf"),
        "2": Citation(citation_number=2, document_id="doc-1", document_name="Interview-01.pdf"),
    }
    assert render_citations(text, citation_map) == "A[1] B[2] C[1]"


def test_unknown_documents_stay_literal():
    text = "Claim^[Imaginary.pdf] and^[Interview-01.pdf]"
    citation_map = assign_citation_numbers(scan_citation_markers(text), DOCUMENTS)
    assert list(citation_map) == ["1"]
    assert render_citations(text, citation_map) == "Claim^[Imaginary.pdf] and[1]"


def test_citation_positions():
    text = "x^[Survey.xlsx] y^[Nope.pdf]"
    citation_map = assign_citation_numbers(scan_citation_markers(text), DOCUMENTS)
    assert [(pos, c.citation_number) for pos, c in citation_positions(text, citation_map)] == [(1, 1)]


def test_extract_citations_only_accepts_searched_documents():
    content = "Onboarding is slow^[Interview-01.pdf] per^[Interview-03.pdf]"
    citation_map = extract_citations_from_content(content, [_result("doc-3", "Interview-03.pdf")])
    assert citation_map_to_json(citation_map) == {"1": {"documentId": "doc-3", "documentName": "Interview-03.pdf"}}


def test_stream_tracker_handles_markers_split_across_deltas():
    tracker = CitationStreamTracker(DOCUMENTS)
    assert tracker.feed("Users report friction ^") == []
    assert tracker.feed("[Interview-") == []
    new = tracker.feed("01.pdf] and also^[Survey.xlsx]")
    assert [c.citation_number for c in new] == [1, 2]
    assert [c.document_name for c in new] == ["Interview-01.pdf", "Survey.xlsx"]
    assert tracker.feed(" again^[Interview-01.pdf].") == []
    assert tracker.render() == "Users report friction [1] and also[2] again[1]."


def test_stream_tracker_numbers_are_stable():
    tracker = CitationStreamTracker(DOCUMENTS)
    tracker.feed("^[Survey.xlsx]")
    tracker.feed("^[Interview-03.pdf]")
    assert {key: c.document_name for key, c in tracker.citation_map.items()} == {
        "1": "Survey.xlsx",
        "2": "Interview-03.pdf",
    }


def test_validate_citation_map():
    assert validate_citation_map({"1": {"documentId": "d", "documentName": "n"}})
    assert not validate_citation_map({"one": {"documentId": "d", "documentName": "n"}})
    assert not validate_citation_map({"1": {"documentId": "", "documentName": "n"}})
    assert not validate_citation_map({"1": "d"})


def test_sanitize_drops_malformed_records():
    raw = {
        "1": {"documentId": "doc-1", "documentName": "Interview-01.pdf"},
        "2": {"documentId": "doc-2"},
        "x": {"documentId": "doc-3", "documentName": "C.pdf"},
        "0": {"documentId": "doc-4", "documentName": "D.pdf"},
        "3": "not a record",
    }
    citation_map = sanitize_citation_map(raw)
    assert list(citation_map) == ["1"]
    assert sanitize_citation_map(None) == {}
    assert sanitize_citation_map(["1"]) == {}


def test_validate_against_documents_and_labels():
    citation_map = {
        "1": Citation(citation_number=1, document_id="doc-1", document_name="Interview-01.pdf"),
        "2": Citation(citation_number=2, document_id="gone", document_name="Deleted.pdf"),
    }
    results = validate_citations_against_documents(citation_map, ["doc-1"])
    assert results["1"].is_valid and results["1"].document_exists
    assert not results["2"].document_exists
    assert results["2"].error == MISSING_DOCUMENT_ERROR
    assert citation_label(citation_map["1"], results["1"]) == "[1] Interview-01.pdf"
    assert citation_label(citation_map["2"], results["2"]) == "[2] document does not exist"
