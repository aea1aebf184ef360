from __future__ import annotations

import pytest

from studyrag.ingestion.chunking import (
    ChunkingOptions,
    chunk_text,
    merge_overlapping_chunks,
    normalize_text,
    validate_chunks,
)
from studyrag.models import TextChunk


def _interview(sentences: int = 60) -> str:
    lines = [f"Participant {i} said the onboarding flow felt slow and confusing." for i in range(sentences)]
    paragraphs = [" ".join(lines[i : i + 5]) for i in range(0, len(lines), 5)]
    return "\r\n\r\n".join(paragraphs)


def test_short_text_is_single_chunk():
    chunks = chunk_text("  A short note.  ")
    assert chunks == [TextChunk(content="A short note.", chunk_index=0, start_position=0, end_position=13)]


def test_empty_text_has_no_chunks():
    assert chunk_text("") == []
    assert chunk_text(" \n\n ") == []


def test_chunks_are_slices_of_normalized_text():
    text = _interview()
    clean = normalize_text(text)
    options = ChunkingOptions(chunk_size=300, overlap_size=60, min_chunk_size=40)
    chunks = chunk_text(text, options)

    assert len(chunks) > 1
    for index, chunk in enumerate(chunks):
        assert chunk.chunk_index == index
        assert chunk.content == clean[chunk.start_position : chunk.end_position]
        assert len(chunk.content) <= options.chunk_size + options.overlap_size
    assert validate_chunks(chunks).valid


def test_chunks_cover_every_participant():
    text = _interview(30)
    chunks = chunk_text(text, ChunkingOptions(chunk_size=250, overlap_size=50, min_chunk_size=20))
    joined = "\n".join(chunk.content for chunk in chunks)
    for i in range(30):
        assert f"Participant {i} said" in joined


def test_consecutive_chunks_overlap():
    text = _interview(30)
    chunks = chunk_text(text, ChunkingOptions(chunk_size=250, overlap_size=80, min_chunk_size=20))
    for previous, following in zip(chunks, chunks[1:]):
        assert following.start_position < previous.end_position
        assert following.start_position > previous.start_position


def test_neighbouring_chunks_share_words():
    text = _interview(40)
    chunks = chunk_text(text, ChunkingOptions(chunk_size=300, overlap_size=100, min_chunk_size=20))
    assert len(chunks) > 2
    for previous, following in zip(chunks, chunks[1:]):
        tail = set(previous.content[-100:].split())
        head = set(following.content[:100].split())
        assert tail & head


def test_min_chunk_size_applies_to_all_but_last():
    text = _interview(25)
    options = ChunkingOptions(chunk_size=200, overlap_size=40, min_chunk_size=60)
    chunks = chunk_text(text, options)
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    assert all(len(chunk.content) >= options.min_chunk_size for chunk in chunks[:-1])


def test_paragraph_boundaries_are_preferred():
    paragraph = "word " * 30
    text = f"{paragraph.strip()}\n\n{paragraph.strip()}\n\n{paragraph.strip()}"
    chunks = chunk_text(text, ChunkingOptions(chunk_size=170, overlap_size=0, min_chunk_size=10))
    assert chunks[0].content == paragraph.strip()


def test_without_paragraph_preservation_chunks_are_fixed_width():
    text = "x" * 500
    chunks = chunk_text(text, ChunkingOptions(chunk_size=200, overlap_size=0, min_chunk_size=10, preserve_paragraphs=False))
    assert [len(chunk.content) for chunk in chunks] == [200, 200, 100]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"chunk_size": 0},
        {"chunk_size": 100, "overlap_size": 100},
        {"overlap_size": -1},
        {"min_chunk_size": -5},
    ],
)
def test_invalid_options_rejected(kwargs):
    with pytest.raises(ValueError):
        ChunkingOptions(**kwargs)


def test_validate_chunks_reports_problems():
    chunks = [
        TextChunk(content="alpha", chunk_index=0, start_position=0, end_position=5),
        TextChunk(content="   ", chunk_index=2, start_position=5, end_position=5),
    ]
    report = validate_chunks(chunks)
    assert not report.valid
    assert len(report.errors) == 3


def test_merge_overlapping_chunks():
    chunks = [
        TextChunk(content="the quick brown fox", chunk_index=0, start_position=0, end_position=19),
        TextChunk(content="the quick brown fox", chunk_index=1, start_position=25, end_position=44),
        TextChunk(content="something else entirely", chunk_index=2, start_position=50, end_position=74),
    ]
    merged = merge_overlapping_chunks(chunks)
    assert [chunk.chunk_index for chunk in merged] == [0, 1]
    assert merged[0].content == "the quick brown fox\n\nthe quick brown fox"
    assert merged[0].end_position == 44
    assert merged[1].content == "something else entirely"
