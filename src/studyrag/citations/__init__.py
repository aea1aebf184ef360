"""Citation parsing, validation and structured synthesis."""

from .parsing import (
    CitationMarker,
    CitationStreamTracker,
    CitationValidation,
    assign_citation_numbers,
    citation_label,
    citation_map_to_json,
    extract_citations_from_content,
    render_citations,
    sanitize_citation_map,
    scan_citation_markers,
    validate_citation_map,
    validate_citations_against_documents,
)
from .synthesis import (
    OpenAISynthesizer,
    StructuredResponse,
    SynthesisBackend,
    TemplateSynthesizer,
    build_synthesis_prompt,
    parse_structured_response,
    resolve_structured_citations,
)

__all__ = [
    "CitationMarker",
    "CitationStreamTracker",
    "CitationValidation",
    "OpenAISynthesizer",
    "StructuredResponse",
    "SynthesisBackend",
    "TemplateSynthesizer",
    "assign_citation_numbers",
    "build_synthesis_prompt",
    "citation_label",
    "citation_map_to_json",
    "extract_citations_from_content",
    "parse_structured_response",
    "render_citations",
    "resolve_structured_citations",
    "sanitize_citation_map",
    "scan_citation_markers",
    "validate_citation_map",
    "validate_citations_against_documents",
]
