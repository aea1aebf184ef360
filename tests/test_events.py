from __future__ import annotations

import asyncio
import json

from studyrag.citations.parsing import CitationStreamTracker
from studyrag.models import Citation
from studyrag.streaming.events import (
    CitationsEvent,
    ErrorEvent,
    EventStream,
    ToolCallEndEvent,
    event_payload,
    to_sse,
)


def test_payload_uses_camel_case_and_drops_none():
    payload = event_payload(ToolCallEndEvent(tool_name="search_all_documents", success=True, timestamp=1))
    assert payload == {"type": "tool-call-end", "toolName": "search_all_documents", "success": True, "timestamp": 1}


def test_sse_frame():
    frame = to_sse(ErrorEvent(message="boom"))
    assert frame.startswith("event: error\ndata: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.split("data: ", 1)[1]) == {"type": "error", "message": "boom"}


async def test_stream_delivers_in_order_until_closed():
    stream = EventStream()
    citations = [Citation(citation_number=1, document_id="d1", document_name="A.pdf")]

    async def produce():
        await stream.emit(ToolCallEndEvent(tool_name="t", success=True))
        await stream.emit_citations(citations)
        await stream.emit_citations([])
        await stream.close()
        await stream.emit(ErrorEvent(message="after close"))

    consumed = []
    await asyncio.gather(produce(), _consume(stream, consumed))

    assert [event.type for event in consumed] == ["tool-call-end", "citations"]
    assert isinstance(consumed[1], CitationsEvent)
    assert event_payload(consumed[1])["citations"] == [{"citationNumber": 1, "documentId": "d1", "documentName": "A.pdf"}]
    assert stream.closed
    assert len(stream.history) == 2


async def _consume(stream: EventStream, sink: list) -> None:
    async for event in stream:
        sink.append(event)


async def test_citations_precede_the_text_that_completes_them():
    stream = EventStream()
    tracker = CitationStreamTracker({"A.pdf": "doc-a"})
    await stream.emit_text("Setup is slow^[A", tracker)
    await stream.emit_text(".pdf] for most.", tracker)
    assert [event.type for event in stream.history] == ["text-delta", "citations", "text-delta"]
    assert stream.history[1].citations[0].document_id == "doc-a"
