"""Tests for the FastAPI application."""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from studyrag.api.app import build_dependencies, create_app
from studyrag.config import Settings
from studyrag.embeddings.store import InMemoryChunkStore
from studyrag.errors import TransientEmbeddingError

from conftest import StubBackend, make_embeddings

HEADERS = {"X-User-ID": "u1"}
TEXT = "\n\n".join(f"Paragraph {i}: onboarding was slow and the pricing page confused people." for i in range(40))


class DownBackend(StubBackend):
    async def embed_query(self, text: str):
        raise TransientEmbeddingError("provider down")


def create_test_client(backend=None, **overrides) -> TestClient:
    settings = Settings(environment="test", **overrides)
    deps = build_dependencies(settings, store=InMemoryChunkStore(), embeddings=make_embeddings(backend))
    return TestClient(create_app(settings=settings, dependencies=deps))


def _index(client: TestClient, name: str, document_id: str, study_id: str = "s1", headers=HEADERS) -> dict:
    response = client.post(
        f"/studies/{study_id}/documents/text",
        json={"document_name": name, "text": TEXT, "document_id": document_id},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def _sse_events(body: str) -> list[tuple[str, dict]]:
    events = []
    for frame in body.split("\n\n"):
        lines = frame.strip().splitlines()
        if len(lines) == 2 and lines[0].startswith("event: "):
            events.append((lines[0][len("event: ") :], json.loads(lines[1][len("data: ") :])))
    return events


def test_health_endpoints() -> None:
    client = create_test_client()
    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert "X-Correlation-ID" in health.headers
    assert client.head("/healthz").status_code == 200
    assert client.get("/livez").json() == {"status": "alive"}
    assert client.get("/metrics").status_code == 200


def test_user_header_required() -> None:
    client = create_test_client()
    response = client.post("/studies/s1/search", json={"query": "onboarding"})
    assert response.status_code == 401


def test_api_key_enforced() -> None:
    client = create_test_client(api_key="secret")
    assert client.post("/studies/s1/search", json={"query": "q"}, headers=HEADERS).status_code == 401
    response = client.post("/studies/s1/search", json={"query": "q"}, headers={**HEADERS, "X-API-Key": "secret"})
    assert response.status_code == 200


def test_index_search_and_delete() -> None:
    client = create_test_client()
    document = _index(client, "Interview-01.pdf", "doc-1")
    assert document["status"] == "READY"
    assert document["chunk_count"] >= 1

    listed = client.get("/studies/s1/documents", headers=HEADERS).json()
    assert [item["name"] for item in listed] == ["Interview-01.pdf"]

    search = client.post("/studies/s1/search", json={"query": "onboarding", "limit": 2}, headers=HEADERS)
    assert search.status_code == 200
    payload = search.json()
    assert payload["search_scope"] == "all"
    assert payload["total_found"] == 2
    assert payload["document_names"] == {"doc-1": "Interview-01.pdf"}

    assert client.delete("/studies/s1/documents/doc-1", headers=HEADERS).status_code == 204
    assert client.delete("/studies/s1/documents/doc-1", headers=HEADERS).status_code == 404


def test_search_errors_are_mapped() -> None:
    client = create_test_client()
    _index(client, "A.pdf", "doc-a")
    _index(client, "Other.pdf", "doc-o", study_id="s2")

    denied = client.post("/studies/s1/search", json={"query": "q", "document_ids": ["doc-o"]}, headers=HEADERS)
    assert denied.status_code == 403
    assert "correlation_id" in denied.json()

    filename = client.post("/studies/s1/search", json={"query": "q", "document_ids": ["A.pdf"]}, headers=HEADERS)
    assert filename.status_code == 400

    too_many = client.post("/studies/s1/search", json={"query": "q", "limit": 50}, headers=HEADERS)
    assert too_many.status_code == 422


def test_embedding_outage_returns_503() -> None:
    client = create_test_client(backend=DownBackend())
    response = client.post("/studies/s1/search", json={"query": "onboarding"}, headers=HEADERS)
    assert response.status_code == 503


def test_tool_endpoint() -> None:
    client = create_test_client()
    _index(client, "A.pdf", "doc-a")
    response = client.post(
        "/studies/s1/tools/find_document_ids",
        json={"arguments": {"documentNames": ["A.pdf"]}},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert "doc-a" in response.json()["output"]
    unknown = client.post("/studies/s1/tools/drop_tables", json={"arguments": {}}, headers=HEADERS)
    assert unknown.status_code == 400


def test_summary_content() -> None:
    client = create_test_client()
    _index(client, "A.pdf", "doc-a")
    payload = client.get("/studies/s1/summary-content", headers=HEADERS).json()
    assert payload["document_count"] == 1
    assert payload["context_queries"] == 3
    assert payload["detail_queries"] == 2
    assert payload["formatted_content"].startswith("**Document: A.pdf**")


def test_synthesis_streams_events() -> None:
    client = create_test_client()
    _index(client, "A.pdf", "doc-a")
    _index(client, "B.pdf", "doc-b")
    response = client.post(
        "/studies/s1/synthesis",
        json={"research_question": "Why is onboarding slow?", "search_queries": ["onboarding", "pricing"]},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    names = [name for name, _ in events]
    assert names[0] == "tool-call-start"
    assert names[-3:] == ["citations", "synthesis-complete", "tool-call-end"]
    citations = events[-3][1]["citations"]
    assert [c["citationNumber"] for c in citations] == list(range(1, len(citations) + 1))
    assert events[-1][1]["success"] is True


def test_synthesis_failure_becomes_error_event() -> None:
    client = create_test_client()
    _index(client, "A.pdf", "doc-a")
    response = client.post(
        "/studies/s1/synthesis",
        json={"research_question": "Why?", "search_queries": ["onboarding"], "document_ids": ["doc-unknown"]},
        headers=HEADERS,
    )
    events = _sse_events(response.text)
    assert events[-1][0] == "error"
    assert "Access denied" in events[-1][1]["message"]


def test_citation_extract_and_validate() -> None:
    client = create_test_client()
    _index(client, "A.pdf", "doc-a")
    extract = client.post(
        "/studies/s1/citations/extract",
        json={
            "content": "Slow setup^[A.pdf] and more^[Ghost.pdf]",
            "tool_calls": [{"toolName": "search_all_documents", "input": {"query": "onboarding"}}],
        },
        headers=HEADERS,
    ).json()
    assert extract["citations"] == {"1": {"documentId": "doc-a", "documentName": "A.pdf"}}
    assert extract["rendered"] == "Slow setup[1] and more^[Ghost.pdf]"

    validate = client.post(
        "/studies/s1/citations/validate",
        json={
            "citations": {
                "1": {"documentId": "doc-a", "documentName": "A.pdf"},
                "2": {"documentId": "doc-gone", "documentName": "Gone.pdf"},
                "3": {"documentName": "broken"},
            }
        },
        headers=HEADERS,
    ).json()
    assert validate["dropped"] == 1
    assert validate["results"]["1"]["label"] == "[1] A.pdf"
    assert validate["results"]["2"]["document_exists"] is False
    assert validate["results"]["2"]["label"] == "[2] document does not exist"


@pytest.mark.parametrize("path", ["/cache/stats"])
def test_cache_stats(path: str) -> None:
    client = create_test_client()
    _index(client, "A.pdf", "doc-a")
    client.get("/studies/s1/documents", headers=HEADERS)
    client.get("/studies/s1/documents", headers=HEADERS)
    stats = client.get(path).json()
    assert stats["hits"] >= 1
    assert 0.0 <= stats["hit_rate"] <= 1.0


def test_document_id_of_another_user_is_forbidden() -> None:
    client = create_test_client()
    _index(client, "A.pdf", "doc-a")
    response = client.post(
        "/studies/s1/documents/text",
        json={"document_name": "mine.txt", "text": TEXT, "document_id": "doc-a"},
        headers={"X-User-ID": "u2"},
    )
    assert response.status_code == 403
    listed = client.get("/studies/s1/documents", headers=HEADERS).json()
    assert [item["name"] for item in listed] == ["A.pdf"]


def test_search_is_rate_limited_per_user() -> None:
    client = create_test_client(rate_limit_requests=2)
    _index(client, "A.pdf", "doc-a")
    statuses = [
        client.post("/studies/s1/search", json={"query": "onboarding"}, headers=HEADERS).status_code for _ in range(3)
    ]
    assert statuses == [200, 200, 429]
    other = client.post("/studies/s1/search", json={"query": "onboarding"}, headers={"X-User-ID": "u2"})
    assert other.status_code == 200
    assert client.get("/studies/s1/documents", headers=HEADERS).status_code == 200


def test_citation_stream_sends_citations_before_their_text() -> None:
    client = create_test_client()
    _index(client, "A.pdf", "doc-a")
    content = "Slow setup^[A.pdf] then ^[Ghost.pdf] and ^[A.pdf] again"
    response = client.post(
        "/studies/s1/citations/stream",
        json={
            "content": content,
            "tool_calls": [{"toolName": "search_all_documents", "input": {"query": "onboarding"}}],
            "delta_size": 4,
        },
        headers=HEADERS,
    )
    assert response.status_code == 200
    events = _sse_events(response.text)
    deltas = [payload["text"] for name, payload in events if name == "text-delta"]
    assert "".join(deltas) == content

    citation_events = [(index, payload) for index, (name, payload) in enumerate(events) if name == "citations"]
    assert len(citation_events) == 1
    position, payload = citation_events[0]
    assert payload["citations"] == [{"citationNumber": 1, "documentId": "doc-a", "documentName": "A.pdf"}]
    streamed = ""
    for index, (name, data) in enumerate(events):
        if name == "text-delta":
            streamed += data["text"]
            if "^[A.pdf]" in streamed:
                assert position < index
                break
