"""Splitting extracted document text into overlapping passages."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import List, Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

from studyrag.models import TextChunk

# Preferred split points, best first.
PARAGRAPH_SEPARATORS: tuple[str, ...] = ("\n\n", ". ", "! ", "? ", "\n", "; ", ", ", " ", "")


@dataclass(frozen=True)
class ChunkingOptions:
    """Configuration for :func:`chunk_text`."""

    chunk_size: int = 1000
    overlap_size: int = 200
    min_chunk_size: int = 100
    preserve_paragraphs: bool = True

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if not 0 <= self.overlap_size < self.chunk_size:
            raise ValueError("overlap_size must be >= 0 and smaller than chunk_size")
        if self.min_chunk_size < 0:
            raise ValueError("min_chunk_size must be >= 0")


@dataclass(frozen=True)
class ChunkValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


def normalize_text(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def build_splitter(options: ChunkingOptions) -> RecursiveCharacterTextSplitter:
    separators = list(PARAGRAPH_SEPARATORS) if options.preserve_paragraphs else [""]
    return RecursiveCharacterTextSplitter(
        chunk_size=options.chunk_size,
        chunk_overlap=options.overlap_size,
        separators=separators,
        keep_separator="end",
        add_start_index=True,
    )


def chunk_text(text: str, options: ChunkingOptions | None = None) -> list[TextChunk]:
    """Split ``text`` into overlapping chunks.

    Positions refer to the normalized text (line endings folded to ``\\n`` and
    surrounding whitespace stripped), and each chunk's content is exactly the
    slice between its start and end positions.
    """

    options = options or ChunkingOptions()
    clean = normalize_text(text or "")
    if not clean:
        return []
    if len(clean) <= options.chunk_size:
        return [TextChunk(content=clean, chunk_index=0, start_position=0, end_position=len(clean))]

    documents = build_splitter(options).create_documents([clean])
    spans: list[tuple[int, int]] = []
    cursor = 0
    for position, document in enumerate(documents):
        content = document.page_content
        start = document.metadata.get("start_index", -1)
        if start < 0 or clean[start : start + len(content)] != content:
            start = clean.find(content, cursor)
        if start < 0:
            continue
        cursor = start + 1
        is_final = position == len(documents) - 1
        if len(content) >= options.min_chunk_size or is_final:
            spans.append((start, start + len(content)))
    spans = _carry_overlap(clean, spans, options.overlap_size)
    return [
        TextChunk(content=clean[start:end], chunk_index=index, start_position=start, end_position=end)
        for index, (start, end) in enumerate(spans)
    ]


def _carry_overlap(text: str, spans: list[tuple[int, int]], overlap_size: int) -> list[tuple[int, int]]:
    """Extend spans that start at a paragraph break back over the previous tail."""

    if overlap_size <= 0:
        return spans
    carried = spans[:1]
    for start, end in spans[1:]:
        previous_start, previous_end = carried[-1]
        if start < previous_end:
            carried.append((start, end))
            continue
        begin = max(previous_start + 1, start - overlap_size)
        while begin < previous_end and not text[begin - 1].isspace():
            begin += 1
        while begin < start and text[begin].isspace():
            begin += 1
        carried.append((begin, end))
    return carried


def validate_chunks(chunks: Sequence[TextChunk]) -> ChunkValidation:
    errors: list[str] = []
    for expected, chunk in enumerate(chunks):
        if chunk.chunk_index != expected:
            errors.append(f"Chunk {expected} has incorrect index: expected {expected}, got {chunk.chunk_index}")
        if not chunk.content.strip():
            errors.append(f"Chunk {expected} is empty")
        if chunk.start_position >= chunk.end_position:
            errors.append(
                f"Chunk {expected} has invalid positions: start {chunk.start_position} >= end {chunk.end_position}"
            )
    return ChunkValidation(valid=not errors, errors=errors)


def _word_overlap(left: str, right: str) -> float:
    words_left = set(re.split(r"\s+", left.lower()))
    words_right = set(re.split(r"\s+", right.lower()))
    union = words_left | words_right
    if not union:
        return 0.0
    return len(words_left & words_right) / len(union)


def merge_overlapping_chunks(chunks: Sequence[TextChunk], overlap_threshold: float = 0.8) -> list[TextChunk]:
    """Merge neighbours whose word sets overlap more than ``overlap_threshold`` (Jaccard)."""

    if len(chunks) <= 1:
        return list(chunks)
    merged: list[TextChunk] = []
    current = chunks[0]
    for following in chunks[1:]:
        if _word_overlap(current.content, following.content) > overlap_threshold:
            if following.start_position < current.end_position:
                tail = following.content[current.end_position - following.start_position :]
                content = current.content + tail
            else:
                content = current.content + "\n\n" + following.content
            current = replace(
                current,
                content=content,
                end_position=max(current.end_position, following.end_position),
            )
        else:
            merged.append(current)
            current = following
    merged.append(current)
    return [replace(chunk, chunk_index=index) for index, chunk in enumerate(merged)]


__all__ = [
    "PARAGRAPH_SEPARATORS",
    "ChunkValidation",
    "ChunkingOptions",
    "build_splitter",
    "chunk_text",
    "merge_overlapping_chunks",
    "normalize_text",
    "validate_chunks",
]
