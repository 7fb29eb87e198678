"""Caller dialects, one per inbound API shape."""

from copilotlink.dialects.anthropic import AnthropicDialect
from copilotlink.dialects.base import Dialect, SSEChunk, StreamAccumulator
from copilotlink.dialects.openai import OpenAIDialect
from copilotlink.dialects.responses import NativeResponsesDialect, ResponsesDialect

DIALECTS: dict[str, Dialect] = {
    d.name: d
    for d in (OpenAIDialect(), AnthropicDialect(), ResponsesDialect(), NativeResponsesDialect())
}


def get_dialect(name: str) -> Dialect:
    """Return the translator registered under *name*."""
    try:
        return DIALECTS[name]
    except KeyError:
        known = ", ".join(sorted(DIALECTS))
        raise ValueError(f"Unknown dialect '{name}'. Known: {known}") from None


__all__ = [
    "DIALECTS",
    "AnthropicDialect",
    "Dialect",
    "NativeResponsesDialect",
    "OpenAIDialect",
    "ResponsesDialect",
    "SSEChunk",
    "StreamAccumulator",
    "get_dialect",
]
