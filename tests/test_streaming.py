"""Tests for the upstream event reader and StreamPump."""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import SAMPLE_MODELS, finish_chunk, text_chunk, tool_chunk, usage_chunk
from copilotlink.dialects import AnthropicDialect, OpenAIDialect, ResponsesDialect
from copilotlink.dialects.base import Dialect
from copilotlink.proxy import _streaming_response
from copilotlink.streaming import StreamPump, iter_sse_events

GPT = SAMPLE_MODELS[0]


def _sse(*chunks: dict | str) -> bytes:
    out = []
    for chunk in chunks:
        data = chunk if isinstance(chunk, str) else json.dumps(chunk)
        out.append(f"data: {data}\n\n")
    return "".join(out).encode()


class Upstream:
    """Streams pre-encoded events one per read and records how far it got."""

    def __init__(self, events: list[bytes], fail_after: int | None = None) -> None:
        self.events = events
        self.fail_after = fail_after
        self.sent = 0

    async def body(self):
        for i, event in enumerate(self.events):
            if self.fail_after is not None and i == self.fail_after:
                raise httpx.ReadError("connection reset")
            self.sent += 1
            yield event

    def response(self) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=self.body()
        )


def _pump(dialect: Dialect, upstream: httpx.Response, is_disconnected=None) -> StreamPump:
    body = {"model": "gpt-4.1", "stream": True}
    if dialect.name == "responses":
        body["input"] = "Hi"
    else:
        body["messages"] = [{"role": "user", "content": "Hi"}]
    if dialect.name == "anthropic":
        body["max_tokens"] = 100
    request = dialect.to_upstream(body, GPT)
    return StreamPump(dialect, upstream, dialect.new_accumulator(request), is_disconnected, "t1")


async def _collect(pump: StreamPump) -> list[bytes]:
    return [b async for b in pump.run()]


def _data(raw: bytes) -> list[str]:
    """The data payloads of encoded events, in order."""
    payloads = []
    for block in raw.decode().split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                payloads.append(line[len("data: ") :])
    return payloads


class TestIterSSEEvents:
    async def test_parses_events(self):
        body = (
            b": keep-alive\n\n"
            b"event: ping\ndata: {}\n\n"
            b"data: line one\ndata: line two\n\n"
            b"id: 7\ndata:no-space\n\n"
            b"data: [DONE]"
        )
        resp = httpx.Response(200, content=body)
        events = [e async for e in iter_sse_events(resp)]
        assert [(e.event, e.data) for e in events] == [
            ("ping", "{}"),
            (None, "line one\nline two"),
            (None, "no-space"),
            (None, "[DONE]"),
        ]
        assert events[2].id == "7"


class TestStreamPump:
    async def test_preserves_order_and_ends_once(self):
        upstream = Upstream(
            [
                _sse(text_chunk("a")),
                _sse(text_chunk("b")),
                _sse(text_chunk("c")),
                _sse(finish_chunk(), usage_chunk()),
                _sse("[DONE]"),
            ]
        )
        resp = upstream.response()
        out = await _collect(_pump(OpenAIDialect(), resp))

        payloads = _data(b"".join(out))
        texts = [
            json.loads(p)["choices"][0]["delta"].get("content")
            for p in payloads
            if p != "[DONE]" and json.loads(p)["choices"]
        ]
        assert texts == ["a", "b", "c", None]
        assert payloads.count("[DONE]") == 1
        assert payloads[-1] == "[DONE]"
        assert resp.is_closed

    async def test_upstream_end_without_marker_still_finishes(self):
        resp = Upstream([_sse(text_chunk("a")), _sse(finish_chunk())]).response()
        out = await _collect(_pump(AnthropicDialect(), resp))
        text = b"".join(out).decode()
        assert text.count("event: message_stop") == 1
        assert resp.is_closed

    async def test_caller_disconnect_cancels_upstream(self):
        upstream = Upstream([_sse(text_chunk(str(i))) for i in range(20)] + [_sse("[DONE]")])
        resp = upstream.response()
        checks = 0

        async def is_disconnected() -> bool:
            nonlocal checks
            checks += 1
            return checks > 2

        out = await _collect(_pump(OpenAIDialect(), resp, is_disconnected))

        assert len(out) == 2
        assert b"[DONE]" not in b"".join(out)
        assert resp.is_closed
        assert upstream.sent <= 3

    async def test_mid_stream_failure_emits_error(self):
        upstream = Upstream(
            [_sse(text_chunk("a")), _sse(text_chunk("b")), _sse("[DONE]")], fail_after=1
        )
        resp = upstream.response()
        out = await _collect(_pump(ResponsesDialect(), resp))

        payloads = [json.loads(p) for p in _data(b"".join(out))]
        assert payloads[-1]["type"] == "response.failed"
        assert "connection reset" in payloads[-1]["response"]["error"]["message"]
        assert not any(p["type"] == "response.completed" for p in payloads)
        assert resp.is_closed

    async def test_malformed_event(self):
        resp = Upstream([_sse(text_chunk("a")), b"data: {not json\n\n"]).response()
        out = await _collect(_pump(OpenAIDialect(), resp))
        payloads = _data(b"".join(out))
        assert "error" in json.loads(payloads[-2])
        assert payloads[-1] == "[DONE]"

    async def test_upstream_error_event(self):
        resp = Upstream([_sse({"error": {"message": "quota exceeded"}})]).response()
        out = await _collect(_pump(AnthropicDialect(), resp))
        text = b"".join(out).decode()
        assert "event: error" in text
        assert "quota exceeded" in text
        assert "message_stop" not in text

    @pytest.mark.parametrize(
        "dialect", [OpenAIDialect(), AnthropicDialect(), ResponsesDialect()], ids=lambda d: d.name
    )
    async def test_tool_call_stream_end_to_end(self, dialect: Dialect):
        resp = Upstream(
            [
                _sse(tool_chunk(0, '{"a":', "call_1", "f")),
                _sse(tool_chunk(0, "1}")),
                _sse(finish_chunk("tool_calls")),
                _sse("[DONE]"),
            ]
        ).response()
        out = await _collect(_pump(dialect, resp))
        assert out
        assert resp.is_closed


class TestPumpClose:
    async def test_close_before_run_releases_upstream(self):
        upstream = Upstream([_sse(text_chunk("a")), _sse("[DONE]")])
        resp = upstream.response()
        pump = _pump(OpenAIDialect(), resp)

        await pump.aclose()
        await pump.aclose()

        assert resp.is_closed
        assert upstream.sent == 0

    async def test_response_closes_upstream_when_body_never_sent(self):
        resp = Upstream([_sse(text_chunk("a")), _sse("[DONE]")]).response()
        response = _streaming_response(_pump(OpenAIDialect(), resp))

        assert response.background is not None
        await response.background()

        assert resp.is_closed

    async def test_close_after_run_is_harmless(self):
        resp = Upstream([_sse(text_chunk("a")), _sse("[DONE]")]).response()
        pump = _pump(OpenAIDialect(), resp)
        out = await _collect(pump)

        await pump.aclose()

        assert out[-1] == b"data: [DONE]\n\n"
        assert resp.is_closed
