"""Streaming event emission."""

from .events import (
    CitationsEvent,
    ErrorEvent,
    EventStream,
    StreamEvent,
    SynthesisCompleteEvent,
    SynthesisProgressEvent,
    TextDeltaEvent,
    ToolCallEndEvent,
    ToolCallStartEvent,
    event_payload,
    to_sse,
)

__all__ = [
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
