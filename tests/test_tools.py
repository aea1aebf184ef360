from __future__ import annotations

import pytest

from studyrag.errors import AccessDeniedError, InvalidQueryError
from studyrag.services.tools import (
    FIND_DOCUMENT_IDS,
    SEARCH_ALL_DOCUMENTS,
    SEARCH_SPECIFIC_DOCUMENTS,
    SearchTools,
    ToolConfig,
    validate_search_parameters,
)
from studyrag.streaming.events import EventStream


@pytest.fixture
def tools(engine, resolver) -> SearchTools:
    return SearchTools(engine, resolver, ToolConfig())


def test_validate_search_parameters():
    assert validate_search_parameters(SEARCH_ALL_DOCUMENTS, {"query": "churn"}) == []
    errors = validate_search_parameters(
        SEARCH_SPECIFIC_DOCUMENTS, {"query": " ", "limit": 20, "minSimilarity": 1.5, "documentIds": []}
    )
    assert errors == [
        "Query is required and must be a string",
        "Limit must be a number between 1 and 15",
        "MinSimilarity must be a number between 0 and 1",
        "At least one document ID is required for specific document search",
    ]
    assert validate_search_parameters(SEARCH_SPECIFIC_DOCUMENTS, {"query": "q"}) == [
        "DocumentIds is required for specific document search and must be an array"
    ]


async def test_search_all_uses_default_limit(tools, scope, study):
    result = await tools.search_all_documents("onboarding", scope)
    assert result.total_found == 3
    assert result.search_scope == "all"
    assert result.document_names == {"doc-a": "A.pdf", "doc-b": "B.pdf"}


async def test_search_limit_is_capped(tools, scope, study):
    with pytest.raises(InvalidQueryError):
        await tools.search_all_documents("onboarding", scope, limit=16)


async def test_specific_search_rejects_filenames(tools, backend, scope, study):
    with pytest.raises(InvalidQueryError) as excinfo:
        await tools.search_specific_documents("onboarding", scope, ["A.pdf"])
    assert "find_document_ids" in str(excinfo.value)
    assert backend.queries == []


async def test_specific_search_validates_access(tools, scope, study):
    with pytest.raises(AccessDeniedError):
        await tools.search_specific_documents("onboarding", scope, ["doc-x"])
    result = await tools.search_specific_documents("onboarding", scope, ["doc-b"], limit=5, min_similarity=0.0)
    assert {r.document_id for r in result.results} == {"doc-b"}
    assert result.document_names == {"doc-b": "B.pdf"}


async def test_execute_search_all_formats_passages(tools, scope, study):
    output = await tools.execute(SEARCH_ALL_DOCUMENTS, {"query": "onboarding", "limit": 2}, scope)
    assert output.startswith("Found 2 relevant passages in all documents (2 searched):\n\n**1. A.pdf** (90% relevance)")


async def test_execute_specific_without_results_suggests_alternatives(tools, scope, study):
    output = await tools.execute(
        SEARCH_SPECIFIC_DOCUMENTS,
        {"query": "onboarding", "documentIds": ["doc-b"], "minSimilarity": 0.95},
        scope,
    )
    assert output.startswith("No relevant content found in B.pdf.")
    assert "Try searching all 2 documents with search_all_documents" in output
    assert "Search other available documents: A.pdf" in output


async def test_execute_find_document_ids(tools, scope, study):
    output = await tools.execute(FIND_DOCUMENT_IDS, {"documentNames": ["A.pdf", "Missing.pdf"]}, scope)
    assert '• "A.pdf" → doc-a' in output
    assert "❌ Could not find: Missing.pdf" in output


async def test_execute_emits_start_and_end_events(tools, scope, study):
    events = EventStream()
    with pytest.raises(InvalidQueryError):
        await tools.execute(SEARCH_ALL_DOCUMENTS, {"query": ""}, scope, events=events)
    await tools.execute(SEARCH_ALL_DOCUMENTS, {"query": "onboarding"}, scope, events=events)
    assert [(e.type, getattr(e, "success", None)) for e in events.history] == [
        ("tool-call-start", None),
        ("tool-call-end", False),
        ("tool-call-start", None),
        ("tool-call-end", True),
    ]


async def test_unknown_tool_rejected(tools, scope):
    with pytest.raises(InvalidQueryError):
        await tools.execute("delete_everything", {}, scope)


async def test_rerun_tool_searches_merges_and_skips_failures(tools, scope, study):
    results = await tools.rerun_tool_searches(
        [
            {"toolName": SEARCH_ALL_DOCUMENTS, "input": {"query": "onboarding", "limit": 2}},
            {"toolName": SEARCH_SPECIFIC_DOCUMENTS, "input": {"query": "onboarding", "documentIds": ["doc-a"]}},
            {"toolName": SEARCH_SPECIFIC_DOCUMENTS, "input": {"query": "onboarding", "documentIds": ["doc-x"]}},
            {"toolName": FIND_DOCUMENT_IDS, "input": {"documentNames": ["A.pdf"]}},
        ],
        scope,
    )
    assert [r.chunk_id for r in results] == ["doc-a-0", "doc-b-0", "doc-a-1", "doc-a-2"]


async def test_rerun_tool_searches_tolerates_bad_arguments(engine, resolver, scope, study):
    tools = SearchTools(engine, resolver, ToolConfig(min_similarity=0.5))
    results = await tools.rerun_tool_searches(
        [
            {"toolName": SEARCH_ALL_DOCUMENTS, "input": {"query": "onboarding", "limit": "lots"}},
            {"toolName": SEARCH_ALL_DOCUMENTS, "input": "not a mapping"},
            {"toolName": SEARCH_ALL_DOCUMENTS, "input": {"query": "onboarding", "minSimilarity": 0}},
        ],
        scope,
    )
    assert [r.chunk_id for r in results] == ["doc-a-0", "doc-b-0", "doc-a-1", "doc-b-1", "doc-a-2"]
