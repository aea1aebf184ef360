"""Pydantic models for the studyrag API."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from studyrag.config import get_settings


class TextIndexRequest(BaseModel):
    """Payload for indexing raw document text."""

    document_name: str = Field(..., min_length=1, description="Display name of the document, e.g. interview-01.pdf")
    text: str = Field(..., min_length=1, description="Extracted document text")
    document_id: Optional[str] = Field(default=None, description="Stable identifier; generated when omitted")


class DocumentResponse(BaseModel):
    document_id: str
    name: str
    status: str
    chunk_count: int = Field(..., ge=0)


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, description="Natural-language search query")
    limit: Optional[int] = Field(default=None, ge=1, le=get_settings().search_max_limit)
    min_similarity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    document_ids: Optional[List[str]] = Field(
        default=None,
        min_length=1,
        description="Restrict the search to these documents of the study",
    )


class SearchResultModel(BaseModel):
    chunk_id: str
    document_id: str
    document_name: str
    content: str
    similarity: float
    chunk_index: int


class SearchResponse(BaseModel):
    results: List[SearchResultModel]
    total_found: int
    search_scope: Literal["all", "specific"]
    document_names: Dict[str, str]


class ToolCallRequest(BaseModel):
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolCallResponse(BaseModel):
    tool_name: str
    output: str


class SynthesisRequest(BaseModel):
    research_question: str = Field(..., min_length=1)
    search_queries: List[str] = Field(..., min_length=1, max_length=5)
    document_ids: Optional[List[str]] = None


class SummaryContentResponse(BaseModel):
    formatted_content: str
    total_chunks: int
    document_count: int
    context_queries: int
    detail_queries: int


class CitationExtractRequest(BaseModel):
    content: str
    tool_calls: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Persisted tool calls ({toolName, input}) whose searches are re-run",
    )
    results: List[SearchResultModel] = Field(default_factory=list)


class CitationStreamRequest(CitationExtractRequest):
    delta_size: int = Field(default=24, ge=1, le=4096, description="Characters per text-delta event")


class CitationExtractResponse(BaseModel):
    citations: Dict[str, Dict[str, str]]
    rendered: str


class CitationValidateRequest(BaseModel):
    citations: Dict[str, Any]


class CitationStatus(BaseModel):
    is_valid: bool
    document_exists: bool
    label: str
    error: Optional[str] = None


class CitationValidateResponse(BaseModel):
    results: Dict[str, CitationStatus]
    dropped: int = Field(..., ge=0, description="Malformed records ignored")


class CacheStatsResponse(BaseModel):
    hits: int
    misses: int
    evictions: int
    expired: int
    size: int
    hit_rate: float
