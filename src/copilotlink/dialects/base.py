"""Shared contract and helpers for caller dialects."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError as PydanticValidationError

from copilotlink.errors import ProxyError, ValidationError
from copilotlink.models import CanonicalRequest, Capability, ModelDescriptor

logger = logging.getLogger(__name__)

REJECT = "reject"
IGNORE = "ignore"


# ---------------------------------------------------------------------------
# Outbound stream chunks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SSEChunk:
    """One server-sent event written to the caller."""

    data: dict[str, Any] | str
    event: str | None = None

    def encode(self) -> bytes:
        payload = self.data if isinstance(self.data, str) else json.dumps(self.data)
        prefix = f"event: {self.event}\n" if self.event else ""
        return f"{prefix}data: {payload}\n\n".encode()


# ---------------------------------------------------------------------------
# Per-stream accumulator
# ---------------------------------------------------------------------------


@dataclass
class ToolCallFragment:
    """A tool call being reassembled from streamed argument fragments."""

    index: int
    id: str = ""
    name: str = ""
    parts: list[str] = field(default_factory=list)
    finished: bool = False

    @property
    def arguments(self) -> str:
        return "".join(self.parts)

    def parsed_arguments(self) -> Any:
        """Arguments as JSON, or raises ValueError if they are not valid JSON."""
        text = self.arguments
        return json.loads(text) if text.strip() else {}


@dataclass
class StreamAccumulator:
    """Transient state for one streamed exchange; never shared across requests."""

    response_id: str
    model: str
    created: int = field(default_factory=lambda: int(time.time()))
    tool_calls: dict[int, ToolCallFragment] = field(default_factory=dict)
    finish_reason: str | None = None
    usage: dict[str, Any] | None = None
    started: bool = False
    ended: bool = False
    # Dialect-owned framing state (open block indexes, output items, ...)
    state: dict[str, Any] = field(default_factory=dict)

    def add_tool_fragment(
        self,
        index: int,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> tuple[ToolCallFragment, bool]:
        """Record a fragment; returns the call and whether it is newly seen."""
        call = self.tool_calls.get(index)
        is_new = call is None
        if call is None:
            call = ToolCallFragment(index=index)
            self.tool_calls[index] = call
        if call_id:
            call.id = call_id
        if name and not call.name:
            call.name = name
        if arguments:
            call.parts.append(arguments)
        return call, is_new

    def finish_calls_before(self, index: int) -> list[ToolCallFragment]:
        """Mark every open call with a lower index finished and return them."""
        done = []
        for call in self.tool_calls.values():
            if not call.finished and call.index < index:
                call.finished = True
                done.append(call)
        return done

    def finish_all_calls(self) -> list[ToolCallFragment]:
        return self.finish_calls_before(index=2**31)

    def close(self) -> None:
        """Release everything held for the stream."""
        self.tool_calls.clear()
        self.state.clear()
        self.ended = True


# ---------------------------------------------------------------------------
# Dialect contract
# ---------------------------------------------------------------------------


@runtime_checkable
class Dialect(Protocol):
    """Translation contract every caller dialect implements."""

    name: str
    upstream_path: str

    def to_upstream(
        self,
        body: dict[str, Any],
        model: ModelDescriptor | None,
        field_policy: Mapping[str, str] | None = None,
    ) -> CanonicalRequest:
        """Map a caller request to the canonical upstream request."""
        ...

    def from_upstream(self, response: dict[str, Any], request: CanonicalRequest) -> dict[str, Any]:
        """Map a non-streamed upstream response back to the caller's shape."""
        ...

    def new_accumulator(self, request: CanonicalRequest) -> StreamAccumulator:
        ...

    def translate_chunk(
        self, chunk: dict[str, Any], acc: StreamAccumulator
    ) -> list[SSEChunk]:
        """Translate one upstream stream chunk into zero or more caller chunks."""
        ...

    def finish_stream(self, acc: StreamAccumulator) -> list[SSEChunk]:
        """Flush pending state and emit the stream end marker (at most once)."""
        ...

    def stream_error(self, error: ProxyError, acc: StreamAccumulator) -> list[SSEChunk]:
        """Best-effort error event for a stream that failed mid-way."""
        ...

    def error_body(self, error: ProxyError) -> dict[str, Any]:
        """Error response body in the dialect's shape."""
        ...


# ---------------------------------------------------------------------------
# Helpers shared by translators
# ---------------------------------------------------------------------------


def resolve_field_policy(
    defaults: Mapping[str, str], overrides: Mapping[str, str] | None
) -> dict[str, str]:
    policy = dict(defaults)
    if overrides:
        policy.update(overrides)
    return policy


def apply_field_policy(
    body: Mapping[str, Any],
    policy: Mapping[str, str],
    dialect: str,
) -> None:
    """Reject present fields whose policy says so; ignored ones are only logged."""
    for name, action in policy.items():
        if body.get(name) is None:
            continue
        if action == REJECT:
            raise ValidationError(
                f"'{name}' is not supported by this proxy for {dialect} requests",
                param=name,
            )
        logger.debug("Ignoring unsupported %s field '%s'", dialect, name)


def require_model(body: Mapping[str, Any]) -> str:
    model = body.get("model")
    if not isinstance(model, str) or not model:
        raise ValidationError("'model' is required", param="model")
    return model


def build_canonical(fields: dict[str, Any], caller_model: str) -> CanonicalRequest:
    """Construct the canonical request, turning schema errors into ValidationError."""
    try:
        request = CanonicalRequest(**fields)
    except PydanticValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(
            f"Invalid request field '{loc}': {first.get('msg')}", param=loc
        ) from e
    request.remember_caller_model(caller_model)
    return request


def adapt_to_model(request: CanonicalRequest, model: ModelDescriptor | None) -> CanonicalRequest:
    """Apply per-model quirks and refuse content the model cannot take."""
    if model is None:
        return request
    if model.capabilities:
        if request.has_images and not model.supports(Capability.VISION):
            raise ValidationError(f"Model '{model.id}' does not accept image input")
        if request.tools and not model.supports(Capability.TOOL_CALLS):
            raise ValidationError(f"Model '{model.id}' does not support tool calls")
    if not model.supports_system_role and any(
        m.get("role") == "system" for m in request.messages
    ):
        request.messages = fold_system_messages(request.messages)
    return request


def fold_system_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Merge system messages into the first user turn for models without a system role."""
    system_texts = [
        content_to_text(m.get("content")) for m in messages if m.get("role") == "system"
    ]
    rest = [m for m in messages if m.get("role") != "system"]
    if not system_texts:
        return rest
    preamble = "\n\n".join(t for t in system_texts if t)
    for i, msg in enumerate(rest):
        if msg.get("role") == "user":
            content = msg.get("content")
            if isinstance(content, list):
                merged: Any = [{"type": "text", "text": preamble}, *content]
            else:
                merged = f"{preamble}\n\n{content or ''}"
            rest[i] = {**msg, "content": merged}
            return rest
    return [{"role": "user", "content": preamble}, *rest]


def content_to_text(content: Any) -> str:
    """Flatten chat content (string or parts) to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") in ("text", "input_text", "output_text")
        )
    return str(content)


def merge_choices(response: dict[str, Any]) -> dict[str, Any]:
    """Merge choices that share an index into one.

    Copilot sometimes splits one assistant turn into a text choice and a
    tool-call choice with the same index.
    """
    choices = response.get("choices") or []
    if len(choices) < 2:
        return response

    merged: dict[int, dict[str, Any]] = {}
    for choice in choices:
        index = choice.get("index", 0)
        msg = choice.get("message") or {}
        target = merged.get(index)
        if target is None:
            merged[index] = {**choice, "message": dict(msg)}
            continue
        tmsg = target["message"]
        if msg.get("content"):
            tmsg["content"] = (tmsg.get("content") or "") + msg["content"]
        if msg.get("tool_calls"):
            tmsg["tool_calls"] = [*(tmsg.get("tool_calls") or []), *msg["tool_calls"]]
        # A tool-call finish reason wins over a plain stop
        if choice.get("finish_reason") and target.get("finish_reason") != "tool_calls":
            target["finish_reason"] = choice["finish_reason"]
    return {**response, "choices": [merged[i] for i in sorted(merged)]}


def first_choice(response: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    """Return ``(message, finish_reason)`` of the first choice of a merged response."""
    choices = merge_choices(response).get("choices") or []
    if not choices:
        return {}, None
    return choices[0].get("message") or {}, choices[0].get("finish_reason")


def usage_counts(usage: Mapping[str, Any] | None) -> tuple[int, int, int]:
    """``(prompt, completion, cached_prompt)`` token counts from an upstream usage block."""
    if not usage:
        return 0, 0, 0
    details = usage.get("prompt_tokens_details") or {}
    return (
        int(usage.get("prompt_tokens") or 0),
        int(usage.get("completion_tokens") or 0),
        int(details.get("cached_tokens") or 0),
    )
