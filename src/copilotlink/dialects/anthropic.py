"""Anthropic Messages dialect (``POST /v1/messages``), as spoken by Claude Code.

Translates between the Messages API and the upstream chat-completions
schema. Tool arguments stream as ``input_json_delta`` fragments, which
Anthropic clients reassemble themselves, so fragments are forwarded as
soon as they arrive.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from copilotlink.dialects.base import (
    IGNORE,
    REJECT,
    SSEChunk,
    StreamAccumulator,
    adapt_to_model,
    apply_field_policy,
    build_canonical,
    first_choice,
    require_model,
    resolve_field_policy,
    usage_counts,
)
from copilotlink.errors import ProxyError, TranslationError, ValidationError
from copilotlink.models import CanonicalRequest, ModelDescriptor

logger = logging.getLogger(__name__)

DEFAULT_FIELD_POLICY: dict[str, str] = {
    "container": REJECT,
    "mcp_servers": REJECT,
    "server_tools": REJECT,
    "document": REJECT,
    "top_k": IGNORE,
    "thinking": IGNORE,
    "service_tier": IGNORE,
}

# Policy entries that name a block or tool kind rather than a top-level field
_NON_FIELD_POLICIES = {"server_tools", "document"}

_STOP_REASON_MAP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "refusal",
}


def _stop_reason(finish_reason: str | None, has_tool_use: bool) -> str:
    if has_tool_use and finish_reason in (None, "stop", "tool_calls"):
        return "tool_use"
    return _STOP_REASON_MAP.get(finish_reason or "stop", "end_turn")


def _anthropic_usage(usage: Mapping[str, Any] | None) -> dict[str, int]:
    prompt, completion, cached = usage_counts(usage)
    out = {"input_tokens": prompt - cached, "output_tokens": completion}
    if cached:
        out["cache_read_input_tokens"] = cached
    return out


def _image_part(block: dict[str, Any]) -> dict[str, Any]:
    source = block.get("source") or {}
    if source.get("type") == "url":
        url = source.get("url", "")
    elif source.get("type") == "base64":
        url = f"data:{source.get('media_type')};base64,{source.get('data')}"
    else:
        raise ValidationError(f"Unsupported image source type '{source.get('type')}'")
    return {"type": "image_url", "image_url": {"url": url}}


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n\n".join(
            b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"
        )
    return "" if content is None else json.dumps(content)


class AnthropicDialect:
    """Messages API callers."""

    name = "anthropic"
    upstream_path = "/chat/completions"

    # -- Requests ---------------------------------------------------------------

    def to_upstream(
        self,
        body: dict[str, Any],
        model: ModelDescriptor | None,
        field_policy: Mapping[str, str] | None = None,
    ) -> CanonicalRequest:
        caller_model = require_model(body)
        raw_messages = body.get("messages")
        if not isinstance(raw_messages, list) or not raw_messages:
            raise ValidationError("'messages' must be a non-empty list", param="messages")

        policy = resolve_field_policy(DEFAULT_FIELD_POLICY, field_policy)
        apply_field_policy(
            {k: v for k, v in body.items() if k not in _NON_FIELD_POLICIES}, policy, self.name
        )

        messages: list[dict[str, Any]] = []
        system_text = self._system_text(body.get("system"))
        if system_text:
            messages.append({"role": "system", "content": system_text})
        for msg in raw_messages:
            messages.extend(self._translate_message(msg, policy))

        fields: dict[str, Any] = {
            "model": model.id if model is not None else caller_model,
            "messages": messages,
            "max_tokens": body.get("max_tokens"),
            "temperature": body.get("temperature"),
            "top_p": body.get("top_p"),
            "stream": bool(body.get("stream")),
        }
        if body.get("stop_sequences"):
            fields["stop"] = body["stop_sequences"]
        user_id = (body.get("metadata") or {}).get("user_id")
        if user_id:
            fields["user"] = user_id
        if fields["stream"]:
            fields["stream_options"] = {"include_usage": True}

        tools = [t for t in (self._translate_tool(t, policy) for t in body.get("tools") or []) if t]
        if tools:
            fields["tools"] = tools
        tool_choice = body.get("tool_choice")
        if tool_choice and tools:
            fields["tool_choice"] = self._translate_tool_choice(tool_choice)
            if tool_choice.get("disable_parallel_tool_use"):
                fields["parallel_tool_calls"] = False

        return adapt_to_model(build_canonical(fields, caller_model), model)

    @staticmethod
    def _system_text(system: Any) -> str:
        if not system:
            return ""
        if isinstance(system, str):
            return system
        if isinstance(system, list):
            return "\n\n".join(
                b.get("text", "")
                for b in system
                if isinstance(b, dict) and b.get("type") == "text"
                # Billing headers injected by Claude Code break the upstream
                and "x-anthropic-billing-header" not in b.get("text", "")
            )
        raise ValidationError("'system' must be a string or a list of text blocks", param="system")

    def _translate_message(
        self, msg: dict[str, Any], policy: Mapping[str, str]
    ) -> list[dict[str, Any]]:
        role = msg.get("role")
        content = msg.get("content")
        if role not in ("user", "assistant"):
            raise ValidationError(f"Unsupported message role '{role}'", param="messages")
        if isinstance(content, str):
            return [{"role": role, "content": content}]
        if not isinstance(content, list):
            raise ValidationError("Message content must be a string or a list of blocks")
        if role == "user":
            return self._translate_user_blocks(content, policy)
        return [self._translate_assistant_blocks(content)]

    def _translate_user_blocks(
        self, blocks: list[dict[str, Any]], policy: Mapping[str, str]
    ) -> list[dict[str, Any]]:
        # Tool results must directly follow the assistant turn that made the calls
        tool_messages: list[dict[str, Any]] = []
        parts: list[dict[str, Any]] = []
        for block in blocks:
            btype = block.get("type")
            if btype == "tool_result":
                tool_messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": block.get("tool_use_id"),
                        "content": _tool_result_text(block.get("content")),
                    }
                )
                nested = block.get("content")
                if isinstance(nested, list):
                    parts.extend(_image_part(b) for b in nested if b.get("type") == "image")
            elif btype == "text":
                parts.append({"type": "text", "text": block.get("text", "")})
            elif btype == "image":
                parts.append(_image_part(block))
            elif btype == "document":
                if policy.get("document") == REJECT:
                    raise ValidationError("Document blocks are not supported", param="messages")
                logger.debug("Dropping document block")
            else:
                logger.debug("Dropping unsupported user block type '%s'", btype)

        out = list(tool_messages)
        if parts:
            if all(p["type"] == "text" for p in parts):
                out.append({"role": "user", "content": "\n\n".join(p["text"] for p in parts)})
            else:
                out.append({"role": "user", "content": parts})
        return out

    @staticmethod
    def _translate_assistant_blocks(blocks: list[dict[str, Any]]) -> dict[str, Any]:
        texts = [b.get("text", "") for b in blocks if b.get("type") == "text"]
        tool_calls = [
            {
                "id": b.get("id"),
                "type": "function",
                "function": {"name": b.get("name"), "arguments": json.dumps(b.get("input", {}))},
            }
            for b in blocks
            if b.get("type") == "tool_use"
        ]
        message: dict[str, Any] = {"role": "assistant", "content": "\n\n".join(texts) or None}
        if tool_calls:
            message["tool_calls"] = tool_calls
        return message

    @staticmethod
    def _translate_tool(tool: dict[str, Any], policy: Mapping[str, str]) -> dict[str, Any] | None:
        if tool.get("type") not in (None, "custom"):
            if policy.get("server_tools") == REJECT:
                raise ValidationError(
                    f"Server tool '{tool.get('name') or tool.get('type')}' is not supported",
                    param="tools",
                )
            logger.debug("Dropping server tool '%s'", tool.get("type"))
            return None
        return {
            "type": "function",
            "function": {
                "name": tool.get("name"),
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
            },
        }

    @staticmethod
    def _translate_tool_choice(choice: dict[str, Any]) -> str | dict[str, Any]:
        ctype = choice.get("type")
        if ctype == "auto":
            return "auto"
        if ctype == "any":
            return "required"
        if ctype == "none":
            return "none"
        if ctype == "tool" and choice.get("name"):
            return {"type": "function", "function": {"name": choice["name"]}}
        raise ValidationError(f"Unsupported tool_choice type '{ctype}'", param="tool_choice")

    # -- Responses --------------------------------------------------------------

    def from_upstream(self, response: dict[str, Any], request: CanonicalRequest) -> dict[str, Any]:
        message, finish_reason = first_choice(response)
        content: list[dict[str, Any]] = []
        text = message.get("content")
        if text:
            content.append({"type": "text", "text": text})
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            try:
                args = json.loads(fn.get("arguments") or "{}")
            except json.JSONDecodeError as e:
                raise TranslationError(
                    f"Upstream returned unparseable arguments for tool '{fn.get('name')}'"
                ) from e
            content.append(
                {"type": "tool_use", "id": tc.get("id"), "name": fn.get("name"), "input": args}
            )

        has_tool_use = any(b["type"] == "tool_use" for b in content)
        return {
            "id": response.get("id") or f"msg_{uuid4().hex[:24]}",
            "type": "message",
            "role": "assistant",
            "model": request.caller_model,
            "content": content,
            "stop_reason": _stop_reason(finish_reason, has_tool_use),
            "stop_sequence": None,
            "usage": _anthropic_usage(response.get("usage")),
        }

    # -- Streaming --------------------------------------------------------------

    def new_accumulator(self, request: CanonicalRequest) -> StreamAccumulator:
        acc = StreamAccumulator(response_id=f"msg_{uuid4().hex[:24]}", model=request.caller_model)
        acc.state.update(
            next_block=0, open_block=None, open_kind=None, tool_blocks={}, held_text=[]
        )
        return acc

    def _message_start(self, acc: StreamAccumulator, usage: Mapping[str, Any] | None) -> SSEChunk:
        acc.started = True
        start_usage = _anthropic_usage(usage)
        start_usage["output_tokens"] = 0
        return SSEChunk(
            {
                "type": "message_start",
                "message": {
                    "id": acc.response_id,
                    "type": "message",
                    "role": "assistant",
                    "model": acc.model,
                    "content": [],
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": start_usage,
                },
            },
            event="message_start",
        )

    @staticmethod
    def _close_block(acc: StreamAccumulator) -> list[SSEChunk]:
        index = acc.state.get("open_block")
        if index is None:
            return []
        acc.state["open_block"] = None
        acc.state["open_kind"] = None
        return [
            SSEChunk({"type": "content_block_stop", "index": index}, event="content_block_stop")
        ]

    @staticmethod
    def _open_block(acc: StreamAccumulator, kind: str, block: dict[str, Any]) -> SSEChunk:
        index = acc.state["next_block"]
        acc.state["next_block"] = index + 1
        acc.state["open_block"] = index
        acc.state["open_kind"] = kind
        return SSEChunk(
            {"type": "content_block_start", "index": index, "content_block": block},
            event="content_block_start",
        )

    @staticmethod
    def _text_delta(acc: StreamAccumulator, text: str) -> list[SSEChunk]:
        out: list[SSEChunk] = []
        if acc.state["open_kind"] != "text":
            out.extend(AnthropicDialect._close_block(acc))
            out.append(AnthropicDialect._open_block(acc, "text", {"type": "text", "text": ""}))
        out.append(
            SSEChunk(
                {
                    "type": "content_block_delta",
                    "index": acc.state["open_block"],
                    "delta": {"type": "text_delta", "text": text},
                },
                event="content_block_delta",
            )
        )
        return out

    @staticmethod
    def _end_tool_block(acc: StreamAccumulator) -> list[SSEChunk]:
        """Close the open block; text held back behind a tool block follows it."""
        out = AnthropicDialect._close_block(acc)
        held = acc.state.get("held_text")
        if held:
            acc.state["held_text"] = []
            out.extend(AnthropicDialect._text_delta(acc, "".join(held)))
        return out

    def translate_chunk(self, chunk: dict[str, Any], acc: StreamAccumulator) -> list[SSEChunk]:
        out: list[SSEChunk] = []
        if not acc.started:
            out.append(self._message_start(acc, chunk.get("usage")))

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}

            text = delta.get("content")
            if text:
                if acc.state["open_kind"] == "tool_use":
                    # The open tool_use block stays open until its call is complete
                    acc.state["held_text"].append(text)
                else:
                    out.extend(self._text_delta(acc, text))

            for tc in delta.get("tool_calls") or []:
                index = tc.get("index", 0)
                fn = tc.get("function") or {}
                acc.finish_calls_before(index)
                call, _ = acc.add_tool_fragment(index, tc.get("id"), fn.get("name"))
                block = acc.state["tool_blocks"].get(index)
                if block is None:
                    out.extend(self._end_tool_block(acc))
                    out.extend(self._close_block(acc))
                    out.append(
                        self._open_block(
                            acc,
                            "tool_use",
                            {"type": "tool_use", "id": call.id, "name": call.name, "input": {}},
                        )
                    )
                    block = acc.state["open_block"]
                    acc.state["tool_blocks"][index] = block
                elif block != acc.state["open_block"]:
                    if fn.get("arguments"):
                        logger.warning(
                            "Dropping arguments for tool call %d after its block closed", index
                        )
                    continue
                if fn.get("arguments"):
                    call.parts.append(fn["arguments"])
                    out.append(
                        SSEChunk(
                            {
                                "type": "content_block_delta",
                                "index": block,
                                "delta": {
                                    "type": "input_json_delta",
                                    "partial_json": fn["arguments"],
                                },
                            },
                            event="content_block_delta",
                        )
                    )

            if choice.get("finish_reason"):
                acc.finish_reason = choice["finish_reason"]
                acc.finish_all_calls()
                out.extend(self._end_tool_block(acc))
                out.extend(self._close_block(acc))

        if chunk.get("usage"):
            acc.usage = chunk["usage"]
        return out

    def finish_stream(self, acc: StreamAccumulator) -> list[SSEChunk]:
        if acc.ended:
            return []
        out: list[SSEChunk] = []
        if not acc.started:
            out.append(self._message_start(acc, None))
        out.extend(self._end_tool_block(acc))
        out.extend(self._close_block(acc))

        usage = _anthropic_usage(acc.usage)
        out.append(
            SSEChunk(
                {
                    "type": "message_delta",
                    "delta": {
                        "stop_reason": _stop_reason(acc.finish_reason, bool(acc.tool_calls)),
                        "stop_sequence": None,
                    },
                    "usage": usage,
                },
                event="message_delta",
            )
        )
        out.append(SSEChunk({"type": "message_stop"}, event="message_stop"))
        acc.close()
        return out

    def stream_error(self, error: ProxyError, acc: StreamAccumulator) -> list[SSEChunk]:
        if acc.ended:
            return []
        acc.close()
        return [SSEChunk(self.error_body(error), event="error")]

    def error_body(self, error: ProxyError) -> dict[str, Any]:
        error_type = error.error_type
        if error.status_code == 404:
            error_type = "not_found_error"
        elif error.status_code in (502, 503):
            error_type = "overloaded_error" if error.status_code == 503 else "api_error"
        return {"type": "error", "error": {"type": error_type, "message": error.message}}
