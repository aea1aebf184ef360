"""Structured synthesis: prompt, response schema, backends and citation resolution.

In this mode the model answers with JSON instead of free text. Documents are
labelled ``doc1..docN`` in the prompt and cited inline as ``{{cite:docN}}``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from studyrag.metrics.observability import get_logger
from studyrag.models import Citation, CitationMap, DocumentGroup

STRUCTURED_CITATION_PATTERN = re.compile(r"\{\{cite:(doc\d+)\}\}")
CHUNKS_PER_DOCUMENT_IN_PROMPT = 3

_logger = get_logger("synthesis")


class _SchemaModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DocumentCitation(_SchemaModel):
    document_id: str = Field(min_length=1)
    document_name: str = Field(min_length=1)
    text: str = ""


class SynthesisMetadata(_SchemaModel):
    documents_analyzed: int = 0
    key_themes: List[str] = Field(default_factory=list)
    confidence: Optional[str] = None


class StructuredResponse(_SchemaModel):
    response: str
    citations: List[DocumentCitation] = Field(default_factory=list)
    metadata: SynthesisMetadata = Field(default_factory=SynthesisMetadata)


@dataclass(frozen=True)
class ParsedSynthesis:
    structured: StructuredResponse
    rejected_citations: int = 0


@dataclass(frozen=True)
class ResolvedCitation:
    document_id: str
    document_name: str
    text: str
    document_exists: bool


@dataclass(frozen=True)
class ResolvedSynthesis:
    text: str
    citation_map: CitationMap
    citations: List[ResolvedCitation] = field(default_factory=list)
    rejected_citations: int = 0


def document_label(index: int) -> str:
    return f"doc{index + 1}"


def build_synthesis_prompt(research_question: str, groups: Sequence[DocumentGroup]) -> str:
    sections = [
        "You are a research assistant synthesizing findings from multiple documents.",
        "",
        "## Research Question:",
        research_question,
        "",
        "## Available Documents and Content:",
    ]
    for index, group in enumerate(groups):
        sections.append(f'\n### Document {index + 1}: "{group.document_name}" (ID: {document_label(index)})')
        for chunk_number, chunk in enumerate(group.chunks[:CHUNKS_PER_DOCUMENT_IN_PROMPT], start=1):
            sections.append(f"\n**Chunk {chunk_number} ({round(chunk.similarity * 100)}% relevance):**")
            sections.append(chunk.content)
    sections.extend(
        [
            "",
            "## Instructions:",
            "1. Synthesize insights from the provided content to answer the research question.",
            "2. Cite documents inline as {{cite:doc1}}, {{cite:doc2}}, etc.",
            "3. Add document citations with a representative quote for each cited document.",
            "",
            "Respond with a JSON object with the keys `response`, `citations` "
            "(list of {documentId, documentName, text}) and `metadata` "
            "({documentsAnalyzed, keyThemes}).",
        ]
    )
    return "\n".join(sections)


def parse_structured_response(raw: Mapping[str, Any] | str) -> ParsedSynthesis:
    """Validate model output without letting it fail the synthesis.

    Malformed citation records are dropped and counted. An envelope that is not
    a JSON object degrades to the raw text with default metadata; a bad
    ``metadata`` block degrades to the defaults.
    """

    fallback_text = raw if isinstance(raw, str) else ""
    payload: Any = raw
    if isinstance(raw, str):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            _logger.warning("synthesis.response_not_json", error=str(exc))
            return ParsedSynthesis(structured=StructuredResponse(response=fallback_text))
    if not isinstance(payload, Mapping):
        _logger.warning("synthesis.response_not_object", kind=type(payload).__name__)
        return ParsedSynthesis(structured=StructuredResponse(response=fallback_text))

    raw_citations = payload.get("citations") or []
    if not isinstance(raw_citations, list):
        raw_citations = []
    accepted: list[DocumentCitation] = []
    rejected = 0
    for item in raw_citations:
        try:
            accepted.append(DocumentCitation.model_validate(item))
        except ValidationError:
            rejected += 1
    if rejected:
        _logger.warning("synthesis.citations_rejected", count=rejected)

    try:
        metadata = SynthesisMetadata.model_validate(payload.get("metadata") or {})
    except ValidationError as exc:
        _logger.warning("synthesis.metadata_rejected", error_count=exc.error_count())
        metadata = SynthesisMetadata()
    response = payload.get("response")
    if not isinstance(response, str):
        _logger.warning("synthesis.response_missing")
        response = fallback_text
    structured = StructuredResponse(response=response, citations=accepted, metadata=metadata)
    return ParsedSynthesis(structured=structured, rejected_citations=rejected)


def resolve_structured_citations(parsed: ParsedSynthesis, groups: Sequence[DocumentGroup]) -> ResolvedSynthesis:
    """Turn ``{{cite:docN}}`` markers into numbered citations.

    Numbers follow first appearance. Markers naming an unknown label stay in the
    text as written. Citation records that point at a document outside
    ``groups`` are kept with ``document_exists=False``.
    """

    by_label = {document_label(index): group for index, group in enumerate(groups)}
    by_id = {group.document_id: group for group in groups}
    citation_map: CitationMap = {}
    numbers: dict[str, int] = {}

    def substitute(match: re.Match[str]) -> str:
        group = by_label.get(match.group(1))
        if group is None:
            return match.group(0)
        if group.document_id not in numbers:
            number = len(citation_map) + 1
            numbers[group.document_id] = number
            citation_map[str(number)] = Citation(
                citation_number=number,
                document_id=group.document_id,
                document_name=group.document_name,
            )
        return f"[{numbers[group.document_id]}]"

    text = STRUCTURED_CITATION_PATTERN.sub(substitute, parsed.structured.response)

    resolved: list[ResolvedCitation] = []
    for record in parsed.structured.citations:
        group = by_label.get(record.document_id) or by_id.get(record.document_id)
        if group is None:
            resolved.append(
                ResolvedCitation(
                    document_id=record.document_id,
                    document_name=record.document_name,
                    text=record.text,
                    document_exists=False,
                )
            )
            continue
        resolved.append(
            ResolvedCitation(
                document_id=group.document_id,
                document_name=group.document_name,
                text=record.text,
                document_exists=True,
            )
        )
    return ResolvedSynthesis(
        text=text,
        citation_map=citation_map,
        citations=resolved,
        rejected_citations=parsed.rejected_citations,
    )


class SynthesisBackend(Protocol):
    """Produces a structured synthesis for the grouped search results."""

    async def synthesize(self, *, research_question: str, groups: Sequence[DocumentGroup]) -> ParsedSynthesis:
        """Return the parsed structured response."""


class TemplateSynthesizer:
    """Deterministic synthesizer used for tests and offline environments."""

    async def synthesize(self, *, research_question: str, groups: Sequence[DocumentGroup]) -> ParsedSynthesis:
        lines = [f"Findings for: {research_question}"]
        citations: list[DocumentCitation] = []
        for index, group in enumerate(groups):
            top = group.chunks[0].content.strip() if group.chunks else ""
            excerpt = top.split("\n", 1)[0][:200]
            lines.append(f"- {group.document_name}: {excerpt} {{{{cite:{document_label(index)}}}}}")
            citations.append(
                DocumentCitation(
                    document_id=document_label(index),
                    document_name=group.document_name,
                    text=excerpt,
                )
            )
        structured = StructuredResponse(
            response="\n".join(lines),
            citations=citations,
            metadata=SynthesisMetadata(documents_analyzed=len(groups)),
        )
        return ParsedSynthesis(structured=structured)


class OpenAISynthesizer:
    """Synthesizer calling an OpenAI chat model in JSON mode."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.1,
        max_tokens: int = 1500,
        client: Any | None = None,
    ) -> None:
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key)
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def synthesize(self, *, research_question: str, groups: Sequence[DocumentGroup]) -> ParsedSynthesis:
        prompt = build_synthesis_prompt(research_question, groups)
        completion = await self._client.chat.completions.create(
            model=self._model,
            messages=[{"role": "user", "content": prompt}],
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            response_format={"type": "json_object"},
        )
        content = completion.choices[0].message.content or "{}"
        return parse_structured_response(content)


__all__ = [
    "DocumentCitation",
    "OpenAISynthesizer",
    "ParsedSynthesis",
    "ResolvedCitation",
    "ResolvedSynthesis",
    "StructuredResponse",
    "SynthesisBackend",
    "SynthesisMetadata",
    "TemplateSynthesizer",
    "build_synthesis_prompt",
    "document_label",
    "parse_structured_response",
    "resolve_structured_citations",
]
