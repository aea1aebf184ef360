"""Retrieval tools exposed to the language model.

Each tool returns plain text meant for the model to read: ranked passages,
document id lookups, or a no-results message with next steps.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Sequence

from studyrag.errors import InvalidQueryError
from studyrag.metrics.observability import get_logger
from studyrag.models import SearchResult, SearchScope
from studyrag.retrieval.scope import DocumentLookupResult, ScopeResolver, StudyDocumentContext
from studyrag.retrieval.service import VectorSearchEngine
from studyrag.streaming.events import EventStream, ToolCallEndEvent, ToolCallStartEvent

FILENAME_PATTERN = re.compile(r"\.(txt|pdf|docx|doc)$", re.IGNORECASE)

SEARCH_ALL_DOCUMENTS = "search_all_documents"
SEARCH_SPECIFIC_DOCUMENTS = "search_specific_documents"
FIND_DOCUMENT_IDS = "find_document_ids"
TOOL_NAMES = (SEARCH_ALL_DOCUMENTS, SEARCH_SPECIFIC_DOCUMENTS, FIND_DOCUMENT_IDS)


@dataclass(frozen=True)
class ToolConfig:
    default_limit: int = 3
    max_limit: int = 15
    min_similarity: float = 0.1


@dataclass(frozen=True)
class SearchToolResult:
    results: List[SearchResult]
    search_scope: Literal["all", "specific"]
    document_names: Dict[str, str]
    tool_used: str

    @property
    def total_found(self) -> int:
        return len(self.results)


@dataclass(frozen=True)
class SearchContext:
    study_document_count: int | None = None
    available_documents: List[str] = field(default_factory=list)


def validate_search_parameters(tool_name: str, parameters: Mapping[str, Any], *, max_limit: int = 15) -> list[str]:
    errors: list[str] = []
    query = parameters.get("query")
    if not isinstance(query, str) or not query.strip():
        errors.append("Query is required and must be a string")
    limit = parameters.get("limit")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= max_limit):
        errors.append(f"Limit must be a number between 1 and {max_limit}")
    min_similarity = parameters.get("minSimilarity")
    if min_similarity is not None and (
        isinstance(min_similarity, bool) or not isinstance(min_similarity, (int, float)) or not 0 <= min_similarity <= 1
    ):
        errors.append("MinSimilarity must be a number between 0 and 1")
    if tool_name == SEARCH_SPECIFIC_DOCUMENTS:
        document_ids = parameters.get("documentIds")
        if not isinstance(document_ids, list):
            errors.append("DocumentIds is required for specific document search and must be an array")
        elif not document_ids:
            errors.append("At least one document ID is required for specific document search")
    return errors


def format_search_tool_results(result: SearchToolResult, context: SearchContext | None = None) -> str:
    if result.total_found == 0:
        return _no_results_response(result, context)
    if result.search_scope == "all":
        scope = f"all documents ({len(result.document_names)} searched)"
    else:
        scope = f"{len(result.document_names)} specified documents"
    passages = []
    for index, item in enumerate(result.results, start=1):
        name = result.document_names.get(item.document_id, item.document_name)
        passages.append(f"**{index}. {name}** ({round(item.similarity * 100)}% relevance)\n{item.content.strip()}\n\n")
    return f"Found {result.total_found} relevant passages in {scope}:\n\n" + "---\n\n".join(passages)


def _no_results_response(result: SearchToolResult, context: SearchContext | None) -> str:
    searched = list(result.document_names.values())
    scope = "all documents" if result.search_scope == "all" else ", ".join(searched)
    lines = [f"No relevant content found in {scope}."]
    if result.search_scope == "all":
        lines.append("\n💡 **Suggestions:**")
        lines.append("• Try different search terms or synonyms")
        lines.append("• Use broader, more general terms")
        lines.append("• Lower the similarity threshold (try minSimilarity: 0.05)")
    elif context is not None and context.study_document_count and context.study_document_count > len(searched):
        lines.append("\n💡 **Suggestions:**")
        lines.append(f"• Try searching all {context.study_document_count} documents with search_all_documents")
        lines.append("• Use broader search terms")
        lines.append("• Lower the similarity threshold (try minSimilarity: 0.05)")
        others = [name for name in context.available_documents if name not in searched]
        if others:
            suffix = "..." if len(others) > 3 else ""
            lines.append(f"• Search other available documents: {', '.join(others[:3])}{suffix}")
    return "\n".join(lines)


def format_document_lookup_result(result: DocumentLookupResult) -> str:
    parts: list[str] = []
    ready = [match for match in result.found if match.status == "READY"]
    pending = [match for match in result.found if match.status != "READY"]
    if ready:
        lines = [f"✅ Found {len(ready)} document(s):"]
        lines.extend(f'• "{match.name}" → {match.document_id}' for match in ready)
        ids = ", ".join(f'"{match.document_id}"' for match in ready)
        lines.append(f"\n🔍 Next: Use search_specific_documents with document IDs: [{ids}]")
        parts.append("\n".join(lines))
    if pending:
        lines = [f"⚠️ {len(pending)} document(s) are still processing:"]
        lines.extend(f'• "{match.name}" ({match.status})' for match in pending)
        parts.append("\n".join(lines))
    if result.not_found:
        lines = [f"❌ Could not find: {', '.join(result.not_found)}"]
        if result.alternatives:
            lines.append("\n💡 Did you mean:")
            lines.extend(
                f'• Instead of "{alternative.query}": {", ".join(alternative.suggestions)}'
                for alternative in result.alternatives
            )
        if result.available_documents:
            lines.append(f"\n📄 Available documents: {', '.join(result.available_documents)}")
            lines.append("\n🔍 Alternative: Use search_all_documents to search across all available documents")
        parts.append("\n".join(lines))
    return "\n\n".join(parts).strip()


class SearchTools:
    """Search and lookup tools bound to a search engine and scope resolver."""

    def __init__(
        self,
        engine: VectorSearchEngine,
        resolver: ScopeResolver,
        config: ToolConfig | None = None,
    ) -> None:
        self._engine = engine
        self._resolver = resolver
        self._config = config or ToolConfig()
        self._logger = get_logger("tools")

    @property
    def config(self) -> ToolConfig:
        return self._config

    def _check_limit(self, limit: int | None) -> int:
        effective = self._config.default_limit if limit is None else limit
        if not 1 <= effective <= self._config.max_limit:
            raise InvalidQueryError(f"Limit must be between 1 and {self._config.max_limit}")
        return effective

    async def search_all_documents(
        self,
        query: str,
        scope: SearchScope,
        *,
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> SearchToolResult:
        if not (query or "").strip():
            raise InvalidQueryError("Search query cannot be empty")
        study_scope = scope.narrowed(None)
        results = await self._engine.search(
            query,
            study_scope,
            limit=self._check_limit(limit),
            min_similarity=self._config.min_similarity if min_similarity is None else min_similarity,
        )
        names = await self._resolver.document_names(study_scope, [result.document_id for result in results])
        return SearchToolResult(results=results, search_scope="all", document_names=names, tool_used=SEARCH_ALL_DOCUMENTS)

    async def search_specific_documents(
        self,
        query: str,
        scope: SearchScope,
        document_ids: Sequence[str],
        *,
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> SearchToolResult:
        if not (query or "").strip():
            raise InvalidQueryError("Search query cannot be empty")
        if not document_ids:
            raise InvalidQueryError("At least one document ID is required for specific document search")
        filenames = [document_id for document_id in document_ids if FILENAME_PATTERN.search(document_id)]
        if filenames:
            raise InvalidQueryError(
                f"Document IDs cannot be filenames. Found potential filenames: {', '.join(filenames)}. "
                "Use find_document_ids tool first to convert filenames to document IDs."
            )
        effective_limit = self._check_limit(limit)
        allowed = await self._resolver.validate_document_access(scope, document_ids)
        narrowed = scope.narrowed(allowed)
        results = await self._engine.search(
            query,
            narrowed,
            limit=effective_limit,
            min_similarity=self._config.min_similarity if min_similarity is None else min_similarity,
        )
        names = await self._resolver.document_names(scope, allowed)
        return SearchToolResult(
            results=results,
            search_scope="specific",
            document_names=names,
            tool_used=SEARCH_SPECIFIC_DOCUMENTS,
        )

    async def find_document_ids(self, scope: SearchScope, document_names: Sequence[str]) -> DocumentLookupResult:
        return await self._resolver.find_document_ids(scope, document_names)

    async def study_context(self, scope: SearchScope) -> StudyDocumentContext:
        return await self._resolver.study_context(scope)

    async def execute(
        self,
        tool_name: str,
        arguments: Mapping[str, Any],
        scope: SearchScope,
        *,
        events: EventStream | None = None,
    ) -> str:
        """Run a tool call from the model and return its text output."""

        if tool_name not in TOOL_NAMES:
            raise InvalidQueryError(f"Unknown tool: {tool_name}")
        if events is not None:
            await events.emit(ToolCallStartEvent(tool_name=tool_name, parameters=dict(arguments)))
        try:
            output = await self._dispatch(tool_name, arguments, scope)
        except Exception as exc:
            self._logger.warning("tools.call_failed", tool=tool_name, error=str(exc))
            if events is not None:
                await events.emit(ToolCallEndEvent(tool_name=tool_name, success=False, error=str(exc)))
            raise
        if events is not None:
            await events.emit(ToolCallEndEvent(tool_name=tool_name, success=True))
        return output

    async def _dispatch(self, tool_name: str, arguments: Mapping[str, Any], scope: SearchScope) -> str:
        if tool_name == FIND_DOCUMENT_IDS:
            names = arguments.get("documentNames") or []
            return format_document_lookup_result(await self.find_document_ids(scope, list(names)))
        errors = validate_search_parameters(tool_name, arguments, max_limit=self._config.max_limit)
        if errors:
            raise InvalidQueryError("; ".join(errors))
        query = str(arguments["query"])
        limit = arguments.get("limit")
        min_similarity = arguments.get("minSimilarity")
        if tool_name == SEARCH_ALL_DOCUMENTS:
            result = await self.search_all_documents(query, scope, limit=limit, min_similarity=min_similarity)
            return format_search_tool_results(result)
        result = await self.search_specific_documents(
            query,
            scope,
            list(arguments["documentIds"]),
            limit=limit,
            min_similarity=min_similarity,
        )
        context: SearchContext | None = None
        if not result.results:
            study = await self.study_context(scope)
            context = SearchContext(
                study_document_count=study.total_documents,
                available_documents=list(study.available_names),
            )
        return format_search_tool_results(result, context)

    async def rerun_tool_searches(
        self,
        tool_calls: Sequence[Mapping[str, Any]],
        scope: SearchScope,
    ) -> list[SearchResult]:
        """Repeat persisted search tool calls to recover the passages a response cited.

        Failed calls are skipped; results are deduplicated by chunk id.
        """

        calls = [
            call
            for call in tool_calls
            if isinstance(call, Mapping) and str(call.get("toolName", "")).startswith("search_")
        ]

        async def rerun(call: Mapping[str, Any]) -> list[SearchResult]:
            arguments = call.get("input")
            if not isinstance(arguments, Mapping) or not arguments.get("query"):
                return []
            try:
                raw_limit = arguments.get("limit")
                raw_similarity = arguments.get("minSimilarity")
                limit = min(int(10 if raw_limit is None else raw_limit), self._config.max_limit)
                min_similarity = float(self._config.min_similarity if raw_similarity is None else raw_similarity)
                query = str(arguments["query"])
                document_ids = arguments.get("documentIds")
                if call.get("toolName") == SEARCH_SPECIFIC_DOCUMENTS and document_ids:
                    found = await self.search_specific_documents(
                        query, scope, list(document_ids), limit=limit, min_similarity=min_similarity
                    )
                else:
                    found = await self.search_all_documents(query, scope, limit=limit, min_similarity=min_similarity)
            except Exception as exc:
                self._logger.warning("tools.rerun_failed", tool=call.get("toolName"), error=str(exc))
                return []
            return found.results

        batches = await asyncio.gather(*(rerun(call) for call in calls))
        seen: set[str] = set()
        merged: list[SearchResult] = []
        for batch in batches:
            for result in batch:
                if result.chunk_id in seen:
                    continue
                seen.add(result.chunk_id)
                merged.append(result)
        return merged


__all__ = [
    "FIND_DOCUMENT_IDS",
    "SEARCH_ALL_DOCUMENTS",
    "SEARCH_SPECIFIC_DOCUMENTS",
    "SearchContext",
    "SearchToolResult",
    "SearchTools",
    "ToolConfig",
    "format_document_lookup_result",
    "format_search_tool_results",
    "validate_search_parameters",
]
