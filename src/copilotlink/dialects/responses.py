"""OpenAI Responses dialect (``POST /v1/responses``), as spoken by Codex.

Function calls are delivered as whole items: a call is emitted only after
its arguments are complete and parse as JSON. Text deltas are never held
back while a call is still accumulating.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from copilotlink.dialects.base import (
    IGNORE,
    REJECT,
    SSEChunk,
    StreamAccumulator,
    ToolCallFragment,
    adapt_to_model,
    apply_field_policy,
    build_canonical,
    content_to_text,
    first_choice,
    require_model,
    resolve_field_policy,
    usage_counts,
)
from copilotlink.errors import ProxyError, UpstreamError, ValidationError
from copilotlink.models import CanonicalRequest, ModelDescriptor

logger = logging.getLogger(__name__)

DEFAULT_FIELD_POLICY: dict[str, str] = {
    "previous_response_id": REJECT,
    "background": REJECT,
    "conversation": REJECT,
    "non_function_tools": REJECT,
    "store": IGNORE,
    "include": IGNORE,
    "reasoning": IGNORE,
    "truncation": IGNORE,
    "metadata": IGNORE,
    "service_tier": IGNORE,
    "prompt_cache_key": IGNORE,
    "safety_identifier": IGNORE,
}

_INCOMPLETE_REASONS = {"length": "max_output_tokens", "content_filter": "content_filter"}


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:24]}"


def _responses_usage(usage: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not usage:
        return None
    prompt, completion, cached = usage_counts(usage)
    reasoning = (usage.get("completion_tokens_details") or {}).get("reasoning_tokens") or 0
    return {
        "input_tokens": prompt,
        "input_tokens_details": {"cached_tokens": cached},
        "output_tokens": completion,
        "output_tokens_details": {"reasoning_tokens": reasoning},
        "total_tokens": int(usage.get("total_tokens") or prompt + completion),
    }


def _message_item(item_id: str, text: str, status: str = "completed") -> dict[str, Any]:
    content: list[dict[str, Any]] = []
    if status == "completed":
        content.append({"type": "output_text", "text": text, "annotations": []})
    return {
        "id": item_id,
        "type": "message",
        "status": status,
        "role": "assistant",
        "content": content,
    }


def _function_call_item(
    item_id: str, call_id: str, name: str, arguments: str, status: str = "completed"
) -> dict[str, Any]:
    return {
        "id": item_id,
        "type": "function_call",
        "status": status,
        "call_id": call_id,
        "name": name,
        "arguments": arguments,
    }


def _valid_arguments(name: str, arguments: str) -> str | None:
    """Normalized arguments, or None (logged) when they are not parseable JSON."""
    text = arguments if arguments.strip() else "{}"
    try:
        json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Dropping function call '%s' with unparseable arguments", name)
        return None
    return text


def _response_object(
    response_id: str,
    model: str,
    created_at: int,
    output: list[dict[str, Any]],
    *,
    status: str,
    usage: dict[str, Any] | None = None,
    incomplete_reason: str | None = None,
    error: dict[str, Any] | None = None,
) -> dict[str, Any]:
    output_text = "".join(
        part["text"]
        for item in output
        if item["type"] == "message"
        for part in item["content"]
        if part.get("type") == "output_text"
    )
    return {
        "id": response_id,
        "object": "response",
        "created_at": created_at,
        "status": status,
        "model": model,
        "output": output,
        "output_text": output_text,
        "usage": usage,
        "incomplete_details": {"reason": incomplete_reason} if incomplete_reason else None,
        "error": error,
    }


def _error_body(error: ProxyError) -> dict[str, Any]:
    return {
        "error": {
            "message": error.message,
            "type": error.error_type,
            "param": getattr(error, "param", None),
            "code": getattr(error, "code", None),
        }
    }


def _final_status(finish_reason: str | None, dropped_call: bool) -> tuple[str, str | None]:
    reason = _INCOMPLETE_REASONS.get(finish_reason or "")
    if reason:
        return "incomplete", reason
    if dropped_call:
        # The only other way a call comes out unparseable is truncation
        return "incomplete", "max_output_tokens"
    return "completed", None


class ResponsesDialect:
    """Responses API callers."""

    name = "responses"
    upstream_path = "/chat/completions"

    # -- Requests ---------------------------------------------------------------

    def to_upstream(
        self,
        body: dict[str, Any],
        model: ModelDescriptor | None,
        field_policy: Mapping[str, str] | None = None,
    ) -> CanonicalRequest:
        caller_model = require_model(body)
        policy = resolve_field_policy(DEFAULT_FIELD_POLICY, field_policy)
        apply_field_policy(body, policy, self.name)

        messages: list[dict[str, Any]] = []
        if body.get("instructions"):
            messages.append({"role": "system", "content": body["instructions"]})

        raw_input = body.get("input")
        if isinstance(raw_input, str):
            messages.append({"role": "user", "content": raw_input})
        elif isinstance(raw_input, list):
            for item in raw_input:
                self._translate_item(item, messages)
        else:
            raise ValidationError("'input' must be a string or a list of items", param="input")
        if not any(m["role"] != "system" for m in messages):
            raise ValidationError("'input' contains no conversation items", param="input")

        fields: dict[str, Any] = {
            "model": model.id if model is not None else caller_model,
            "messages": messages,
            "temperature": body.get("temperature"),
            "top_p": body.get("top_p"),
            "max_tokens": body.get("max_output_tokens"),
            "stream": bool(body.get("stream")),
        }
        if fields["stream"]:
            fields["stream_options"] = {"include_usage": True}
        if body.get("user"):
            fields["user"] = body["user"]
        if body.get("parallel_tool_calls") is not None:
            fields["parallel_tool_calls"] = body["parallel_tool_calls"]

        tools = [t for t in (self._translate_tool(t, policy) for t in body.get("tools") or []) if t]
        if tools:
            fields["tools"] = tools
            if body.get("tool_choice") is not None:
                fields["tool_choice"] = self._translate_tool_choice(body["tool_choice"])

        response_format = self._translate_text_format((body.get("text") or {}).get("format"))
        if response_format:
            fields["response_format"] = response_format

        return adapt_to_model(build_canonical(fields, caller_model), model)

    def _translate_item(self, item: Any, messages: list[dict[str, Any]]) -> None:
        if not isinstance(item, dict):
            raise ValidationError("Input items must be objects", param="input")
        itype = item.get("type") or ("message" if "role" in item else None)

        if itype == "message":
            messages.append(self._translate_message(item))
        elif itype == "function_call":
            call = {
                "id": item.get("call_id"),
                "type": "function",
                "function": {"name": item.get("name"), "arguments": item.get("arguments") or "{}"},
            }
            last = messages[-1] if messages else None
            # Consecutive calls belong to one assistant turn
            if last is not None and last["role"] == "assistant":
                last.setdefault("tool_calls", []).append(call)
            else:
                messages.append({"role": "assistant", "content": None, "tool_calls": [call]})
        elif itype == "function_call_output":
            output = item.get("output")
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": item.get("call_id"),
                    "content": output if isinstance(output, str) else content_to_text(output),
                }
            )
        elif itype == "reasoning":
            return
        elif itype == "item_reference":
            raise ValidationError("Stored item references are not supported", param="input")
        else:
            raise ValidationError(f"Unsupported input item type '{itype}'", param="input")

    @staticmethod
    def _translate_message(item: dict[str, Any]) -> dict[str, Any]:
        role = item.get("role")
        if role == "developer":
            role = "system"
        if role not in ("user", "assistant", "system"):
            raise ValidationError(f"Unsupported message role '{role}'", param="input")

        content = item.get("content")
        if isinstance(content, str) or content is None:
            return {"role": role, "content": content or ""}
        if role != "user":
            return {"role": role, "content": content_to_text(content)}

        parts: list[dict[str, Any]] = []
        for part in content:
            ptype = part.get("type")
            if ptype in ("input_text", "output_text", "text"):
                parts.append({"type": "text", "text": part.get("text", "")})
            elif ptype == "input_image":
                url = part.get("image_url")
                if not url:
                    raise ValidationError("Image file references are not supported", param="input")
                image: dict[str, Any] = {"url": url}
                if part.get("detail"):
                    image["detail"] = part["detail"]
                parts.append({"type": "image_url", "image_url": image})
            else:
                raise ValidationError(f"Unsupported content part type '{ptype}'", param="input")
        if all(p["type"] == "text" for p in parts):
            return {"role": role, "content": "".join(p["text"] for p in parts)}
        return {"role": role, "content": parts}

    @staticmethod
    def _translate_tool(tool: dict[str, Any], policy: Mapping[str, str]) -> dict[str, Any] | None:
        if tool.get("type") != "function":
            if policy.get("non_function_tools") == REJECT:
                raise ValidationError(
                    f"Tool type '{tool.get('type')}' is not supported", param="tools"
                )
            logger.debug("Dropping %s tool", tool.get("type"))
            return None
        function: dict[str, Any] = {
            "name": tool.get("name"),
            "description": tool.get("description") or "",
            "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
        }
        if tool.get("strict") is not None:
            function["strict"] = tool["strict"]
        return {"type": "function", "function": function}

    @staticmethod
    def _translate_tool_choice(choice: Any) -> str | dict[str, Any]:
        if choice in ("auto", "none", "required"):
            return str(choice)
        if isinstance(choice, dict) and choice.get("type") == "function" and choice.get("name"):
            return {"type": "function", "function": {"name": choice["name"]}}
        raise ValidationError("Unsupported tool_choice", param="tool_choice")

    @staticmethod
    def _translate_text_format(fmt: dict[str, Any] | None) -> dict[str, Any] | None:
        if not fmt or fmt.get("type") == "text":
            return None
        if fmt.get("type") == "json_object":
            return {"type": "json_object"}
        if fmt.get("type") == "json_schema":
            schema = {k: fmt[k] for k in ("name", "schema", "strict", "description") if k in fmt}
            return {"type": "json_schema", "json_schema": schema}
        raise ValidationError(f"Unsupported text format '{fmt.get('type')}'", param="text.format")

    # -- Responses --------------------------------------------------------------

    def from_upstream(self, response: dict[str, Any], request: CanonicalRequest) -> dict[str, Any]:
        message, finish_reason = first_choice(response)
        output: list[dict[str, Any]] = []
        if message.get("content"):
            output.append(_message_item(_new_id("msg"), message["content"]))

        dropped = False
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            arguments = _valid_arguments(fn.get("name", ""), fn.get("arguments") or "")
            if arguments is None:
                dropped = True
                continue
            call_id = tc.get("id") or ""
            output.append(
                _function_call_item(_new_id("fc"), call_id, fn.get("name", ""), arguments)
            )

        status, reason = _final_status(finish_reason, dropped)
        return _response_object(
            _new_id("resp"),
            request.caller_model,
            int(response.get("created") or time.time()),
            output,
            status=status,
            usage=_responses_usage(response.get("usage")),
            incomplete_reason=reason,
        )

    # -- Streaming --------------------------------------------------------------

    def new_accumulator(self, request: CanonicalRequest) -> StreamAccumulator:
        acc = StreamAccumulator(response_id=_new_id("resp"), model=request.caller_model)
        acc.state.update(seq=0, output=[], message=None, dropped_call=False)
        return acc

    def _event(self, acc: StreamAccumulator, event: str, payload: dict[str, Any]) -> SSEChunk:
        seq = acc.state["seq"]
        acc.state["seq"] = seq + 1
        return SSEChunk({"type": event, "sequence_number": seq, **payload}, event=event)

    def _snapshot(self, acc: StreamAccumulator, status: str, **kwargs: Any) -> dict[str, Any]:
        output = list(acc.state["output"])
        return _response_object(
            acc.response_id, acc.model, acc.created, output, status=status, **kwargs
        )

    def _start(self, acc: StreamAccumulator) -> list[SSEChunk]:
        acc.started = True
        snapshot = self._snapshot(acc, "in_progress")
        return [
            self._event(acc, "response.created", {"response": snapshot}),
            self._event(acc, "response.in_progress", {"response": snapshot}),
        ]

    def _open_message(self, acc: StreamAccumulator) -> list[SSEChunk]:
        item_id = _new_id("msg")
        output_index = len(acc.state["output"])
        acc.state["message"] = {"id": item_id, "output_index": output_index, "parts": []}
        return [
            self._event(
                acc,
                "response.output_item.added",
                {"output_index": output_index, "item": _message_item(item_id, "", "in_progress")},
            ),
            self._event(
                acc,
                "response.content_part.added",
                {
                    "item_id": item_id,
                    "output_index": output_index,
                    "content_index": 0,
                    "part": {"type": "output_text", "text": "", "annotations": []},
                },
            ),
        ]

    def _close_message(self, acc: StreamAccumulator) -> list[SSEChunk]:
        msg = acc.state.get("message")
        if msg is None:
            return []
        acc.state["message"] = None
        text = "".join(msg["parts"])
        item = _message_item(msg["id"], text)
        acc.state["output"].append(item)
        where = {"item_id": msg["id"], "output_index": msg["output_index"], "content_index": 0}
        return [
            self._event(acc, "response.output_text.done", {**where, "text": text}),
            self._event(acc, "response.content_part.done", {**where, "part": item["content"][0]}),
            self._event(
                acc,
                "response.output_item.done",
                {"output_index": msg["output_index"], "item": item},
            ),
        ]

    def _emit_calls(self, acc: StreamAccumulator, calls: list[ToolCallFragment]) -> list[SSEChunk]:
        out: list[SSEChunk] = []
        for call in sorted(calls, key=lambda c: c.index):
            arguments = _valid_arguments(call.name, call.arguments)
            if arguments is None:
                acc.state["dropped_call"] = True
                continue
            out.extend(self._close_message(acc))
            item_id = _new_id("fc")
            output_index = len(acc.state["output"])
            added = _function_call_item(item_id, call.id, call.name, "", "in_progress")
            done = _function_call_item(item_id, call.id, call.name, arguments)
            acc.state["output"].append(done)
            out.append(
                self._event(
                    acc, "response.output_item.added", {"output_index": output_index, "item": added}
                )
            )
            out.append(
                self._event(
                    acc,
                    "response.function_call_arguments.done",
                    {"item_id": item_id, "output_index": output_index, "arguments": arguments},
                )
            )
            out.append(
                self._event(
                    acc, "response.output_item.done", {"output_index": output_index, "item": done}
                )
            )
        return out

    def translate_chunk(self, chunk: dict[str, Any], acc: StreamAccumulator) -> list[SSEChunk]:
        out: list[SSEChunk] = []
        if not acc.started:
            out.extend(self._start(acc))

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}

            text = delta.get("content")
            if text:
                if acc.state["message"] is None:
                    out.extend(self._open_message(acc))
                msg = acc.state["message"]
                msg["parts"].append(text)
                out.append(
                    self._event(
                        acc,
                        "response.output_text.delta",
                        {
                            "item_id": msg["id"],
                            "output_index": msg["output_index"],
                            "content_index": 0,
                            "delta": text,
                        },
                    )
                )

            for tc in delta.get("tool_calls") or []:
                index = tc.get("index", 0)
                fn = tc.get("function") or {}
                out.extend(self._emit_calls(acc, acc.finish_calls_before(index)))
                acc.add_tool_fragment(index, tc.get("id"), fn.get("name"), fn.get("arguments"))

            if choice.get("finish_reason"):
                acc.finish_reason = choice["finish_reason"]
                out.extend(self._emit_calls(acc, acc.finish_all_calls()))

        if chunk.get("usage"):
            acc.usage = chunk["usage"]
        return out

    def finish_stream(self, acc: StreamAccumulator) -> list[SSEChunk]:
        if acc.ended:
            return []
        out: list[SSEChunk] = []
        if not acc.started:
            out.extend(self._start(acc))
        out.extend(self._emit_calls(acc, acc.finish_all_calls()))
        out.extend(self._close_message(acc))

        status, reason = _final_status(acc.finish_reason, acc.state["dropped_call"])
        snapshot = self._snapshot(
            acc, status, usage=_responses_usage(acc.usage), incomplete_reason=reason
        )
        event = "response.completed" if status == "completed" else "response.incomplete"
        out.append(self._event(acc, event, {"response": snapshot}))
        acc.close()
        return out

    def stream_error(self, error: ProxyError, acc: StreamAccumulator) -> list[SSEChunk]:
        if acc.ended:
            return []
        out: list[SSEChunk] = []
        if not acc.started:
            out.extend(self._start(acc))
        snapshot = self._snapshot(
            acc,
            "failed",
            usage=_responses_usage(acc.usage),
            error={"code": "server_error", "message": error.message},
        )
        out.append(self._event(acc, "response.failed", {"response": snapshot}))
        acc.close()
        return out

    def error_body(self, error: ProxyError) -> dict[str, Any]:
        return _error_body(error)


_TERMINAL_EVENTS = frozenset({"response.completed", "response.incomplete", "response.failed"})


class NativeResponsesDialect:
    """Responses callers whose model Copilot serves on ``/responses`` itself.

    The body goes upstream as is, apart from the model id, and upstream
    events are relayed unchanged. Only a stream that ends without a terminal
    event gets a synthesized ``response.failed``.
    """

    name = "responses-native"
    upstream_path = "/responses"

    def to_upstream(
        self,
        body: dict[str, Any],
        model: ModelDescriptor | None,
        field_policy: Mapping[str, str] | None = None,
    ) -> CanonicalRequest:
        caller_model = require_model(body)
        policy = resolve_field_policy({}, field_policy)
        apply_field_policy(body, policy, self.name)
        if not isinstance(body.get("input"), (str, list)):
            raise ValidationError("'input' must be a string or a list of items", param="input")

        fields = {k: v for k, v in body.items() if k not in policy}
        fields["model"] = model.id if model is not None else caller_model
        fields["stream"] = bool(body.get("stream"))
        return adapt_to_model(build_canonical(fields, caller_model), model)

    def from_upstream(self, response: dict[str, Any], request: CanonicalRequest) -> dict[str, Any]:
        return {**response, "model": request.caller_model}

    def new_accumulator(self, request: CanonicalRequest) -> StreamAccumulator:
        acc = StreamAccumulator(response_id=_new_id("resp"), model=request.caller_model)
        acc.state.update(seq=-1, response=None)
        return acc

    def translate_chunk(self, chunk: dict[str, Any], acc: StreamAccumulator) -> list[SSEChunk]:
        acc.started = True
        event = chunk.get("type")
        if isinstance(chunk.get("sequence_number"), int):
            acc.state["seq"] = chunk["sequence_number"]
        response = chunk.get("response")
        if isinstance(response, dict):
            response = {**response, "model": acc.model}
            chunk = {**chunk, "response": response}
            acc.state["response"] = response
            acc.response_id = response.get("id") or acc.response_id
        if event in _TERMINAL_EVENTS:
            acc.ended = True
        return [SSEChunk(chunk, event=event if isinstance(event, str) else None)]

    def finish_stream(self, acc: StreamAccumulator) -> list[SSEChunk]:
        if acc.ended:
            acc.close()
            return []
        error = UpstreamError("Upstream stream ended before the response finished")
        return self.stream_error(error, acc)

    def stream_error(self, error: ProxyError, acc: StreamAccumulator) -> list[SSEChunk]:
        if acc.ended:
            acc.close()
            return []
        snapshot = acc.state.get("response") or _response_object(
            acc.response_id, acc.model, acc.created, [], status="in_progress"
        )
        failed = {
            **snapshot,
            "status": "failed",
            "error": {"code": "server_error", "message": error.message},
        }
        seq = acc.state["seq"] + 1
        acc.close()
        return [
            SSEChunk(
                {"type": "response.failed", "sequence_number": seq, "response": failed},
                event="response.failed",
            )
        ]

    def error_body(self, error: ProxyError) -> dict[str, Any]:
        return _error_body(error)
