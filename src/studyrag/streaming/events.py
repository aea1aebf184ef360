"""Typed events streamed to the client alongside response text."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from studyrag.citations.parsing import CitationStreamTracker
from studyrag.models import Citation


def _now_ms() -> int:
    return int(time.time() * 1000)


class _EventModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CitationPayload(_EventModel):
    citation_number: int
    document_id: str
    document_name: str

    @classmethod
    def from_citation(cls, citation: Citation) -> "CitationPayload":
        return cls(
            citation_number=citation.citation_number,
            document_id=citation.document_id,
            document_name=citation.document_name,
        )


class CitationsEvent(_EventModel):
    type: Literal["citations"] = "citations"
    citations: List[CitationPayload]
    timestamp: int = Field(default_factory=_now_ms)


class ToolCallStartEvent(_EventModel):
    type: Literal["tool-call-start"] = "tool-call-start"
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=_now_ms)


class ToolCallEndEvent(_EventModel):
    type: Literal["tool-call-end"] = "tool-call-end"
    tool_name: str
    success: bool
    error: Optional[str] = None
    timestamp: int = Field(default_factory=_now_ms)


class SynthesisProgressEvent(_EventModel):
    type: Literal["synthesis-progress"] = "synthesis-progress"
    stage: str
    progress: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=_now_ms)


class SynthesisCompleteEvent(_EventModel):
    type: Literal["synthesis-complete"] = "synthesis-complete"
    synthesis: Dict[str, Any]
    synthesis_id: str
    timestamp: int = Field(default_factory=_now_ms)


class TextDeltaEvent(_EventModel):
    type: Literal["text-delta"] = "text-delta"
    text: str


class ErrorEvent(_EventModel):
    type: Literal["error"] = "error"
    message: str


StreamEvent = Union[
    CitationsEvent,
    ToolCallStartEvent,
    ToolCallEndEvent,
    SynthesisProgressEvent,
    SynthesisCompleteEvent,
    TextDeltaEvent,
    ErrorEvent,
]


def event_payload(event: StreamEvent) -> dict[str, Any]:
    return event.model_dump(by_alias=True, exclude_none=True)


def to_sse(event: StreamEvent) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event_payload(event))}\n\n"


_CLOSED = object()


class EventStream:
    """Queue-backed emitter: producers ``emit``, a single consumer iterates.

    Events are delivered in emission order; iteration ends after ``close``.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.history: list[StreamEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: StreamEvent) -> None:
        if self._closed:
            return
        self.history.append(event)
        await self._queue.put(event)

    async def emit_citations(self, citations: List[Citation]) -> None:
        if citations:
            await self.emit(CitationsEvent(citations=[CitationPayload.from_citation(c) for c in citations]))

    async def emit_text(self, delta: str, tracker: CitationStreamTracker | None = None) -> None:
        """Emit a text delta, preceded by any citations it completes."""

        if tracker is not None:
            await self.emit_citations(tracker.feed(delta))
        await self.emit(TextDeltaEvent(text=delta))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


__all__ = [
    "CitationPayload",
    "CitationsEvent",
    "ErrorEvent",
    "EventStream",
    "StreamEvent",
    "SynthesisCompleteEvent",
    "SynthesisProgressEvent",
    "TextDeltaEvent",
    "ToolCallEndEvent",
    "ToolCallStartEvent",
    "event_payload",
    "to_sse",
]
