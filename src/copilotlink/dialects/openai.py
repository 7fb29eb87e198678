"""OpenAI chat-completions dialect.

The upstream already speaks chat completions, so requests and responses
pass through almost unchanged. Streamed tool-call argument fragments are
forwarded as they arrive; this dialect accepts incremental deltas.
"""

from __future__ import annotations

import time
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
    merge_choices,
    require_model,
    resolve_field_policy,
)
from copilotlink.errors import ProxyError, ValidationError
from copilotlink.models import CanonicalRequest, ModelDescriptor

DEFAULT_FIELD_POLICY: dict[str, str] = {
    "audio": REJECT,
    "store": IGNORE,
    "metadata": IGNORE,
    "prediction": IGNORE,
    "service_tier": IGNORE,
}


class OpenAIDialect:
    """Chat-completions callers (``POST /v1/chat/completions``)."""

    name = "openai"
    upstream_path = "/chat/completions"

    def to_upstream(
        self,
        body: dict[str, Any],
        model: ModelDescriptor | None,
        field_policy: Mapping[str, str] | None = None,
    ) -> CanonicalRequest:
        caller_model = require_model(body)
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            raise ValidationError("'messages' must be a non-empty list", param="messages")

        policy = resolve_field_policy(DEFAULT_FIELD_POLICY, field_policy)
        apply_field_policy(body, policy, self.name)
        modalities = body.get("modalities") or []
        if "audio" in modalities:
            raise ValidationError("Audio output is not supported", param="modalities")

        fields = {k: v for k, v in body.items() if k not in policy and k != "modalities"}
        if model is not None:
            fields["model"] = model.id
        return adapt_to_model(build_canonical(fields, caller_model), model)

    def from_upstream(self, response: dict[str, Any], request: CanonicalRequest) -> dict[str, Any]:
        data = merge_choices(response)
        out: dict[str, Any] = {
            "id": data.get("id") or f"chatcmpl-{uuid4().hex[:24]}",
            "object": "chat.completion",
            "created": data.get("created") or int(time.time()),
            "model": request.caller_model,
            "choices": [
                {
                    "index": choice.get("index", i),
                    "message": {"role": "assistant", **(choice.get("message") or {})},
                    "finish_reason": choice.get("finish_reason"),
                    **({"logprobs": choice["logprobs"]} if "logprobs" in choice else {}),
                }
                for i, choice in enumerate(data.get("choices") or [])
            ],
        }
        usage = data.get("usage")
        if usage:
            out["usage"] = {
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "total_tokens": usage.get(
                    "total_tokens",
                    usage.get("prompt_tokens", 0) + usage.get("completion_tokens", 0),
                ),
                **{k: v for k, v in usage.items() if k.endswith("_details")},
            }
        if data.get("system_fingerprint"):
            out["system_fingerprint"] = data["system_fingerprint"]
        return out

    # -- Streaming ------------------------------------------------------------

    def new_accumulator(self, request: CanonicalRequest) -> StreamAccumulator:
        return StreamAccumulator(
            response_id=f"chatcmpl-{uuid4().hex[:24]}", model=request.caller_model
        )

    def translate_chunk(self, chunk: dict[str, Any], acc: StreamAccumulator) -> list[SSEChunk]:
        acc.started = True
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            for tc in delta.get("tool_calls") or []:
                index = tc.get("index", 0)
                fn = tc.get("function") or {}
                # Calls stream one after another; a new index closes the previous ones
                acc.finish_calls_before(index)
                acc.add_tool_fragment(index, tc.get("id"), fn.get("name"), fn.get("arguments"))
            if choice.get("finish_reason"):
                acc.finish_reason = choice["finish_reason"]
                acc.finish_all_calls()
        if chunk.get("usage"):
            acc.usage = chunk["usage"]
        return [SSEChunk({**chunk, "model": acc.model})]

    def finish_stream(self, acc: StreamAccumulator) -> list[SSEChunk]:
        if acc.ended:
            return []
        acc.close()
        return [SSEChunk("[DONE]")]

    def stream_error(self, error: ProxyError, acc: StreamAccumulator) -> list[SSEChunk]:
        if acc.ended:
            return []
        return [SSEChunk(self.error_body(error)), *self.finish_stream(acc)]

    def error_body(self, error: ProxyError) -> dict[str, Any]:
        return {
            "error": {
                "message": error.message,
                "type": error.error_type,
                "param": getattr(error, "param", None),
                "code": getattr(error, "code", None),
            }
        }
