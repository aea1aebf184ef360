"""Service layer: retrieval tools and research synthesis."""

from .synthesis import ResearchSynthesizer, SynthesisOutcome
from .tools import SearchToolResult, SearchTools, ToolConfig

__all__ = [
    "ResearchSynthesizer",
    "SearchToolResult",
    "SearchTools",
    "SynthesisOutcome",
    "ToolConfig",
]
