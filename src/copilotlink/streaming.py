"""Upstream event-stream reader and the pump that relays it to the caller."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

import httpx

from copilotlink.dialects.base import Dialect, SSEChunk, StreamAccumulator
from copilotlink.errors import ProxyError, UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class ServerSentEvent:
    """One event read from an upstream ``text/event-stream`` body."""

    data: str
    event: str | None = None
    id: str | None = None


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[ServerSentEvent]:
    """Yield events lazily as their terminating blank line arrives."""
    data_lines: list[str] = []
    event: str | None = None
    event_id: str | None = None

    async for line in response.aiter_lines():
        if not line:
            if data_lines:
                yield ServerSentEvent("\n".join(data_lines), event, event_id)
            data_lines, event, event_id = [], None, None
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event = value
        elif name == "id":
            event_id = value

    # Some upstreams close without a trailing blank line
    if data_lines:
        yield ServerSentEvent("\n".join(data_lines), event, event_id)


class StreamPump:
    """Drives one upstream stream to completion for one caller.

    The pump owns the upstream response and closes it on every exit path:
    normal end, upstream failure, or the caller going away. Disconnects are
    checked between events, so at most one more upstream event is read after
    the caller has gone.
    """

    def __init__(
        self,
        dialect: Dialect,
        upstream: httpx.Response,
        accumulator: StreamAccumulator,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        request_id: str = "",
    ) -> None:
        self._dialect = dialect
        self._upstream = upstream
        self._acc = accumulator
        self._is_disconnected = is_disconnected
        self._request_id = request_id

    async def aclose(self) -> None:
        """Close the upstream response; safe to call more than once, or before ``run``."""
        await self._upstream.aclose()
        self._acc.close()

    def _encode(self, chunks: list[SSEChunk]) -> list[bytes]:
        return [c.encode() for c in chunks]

    async def run(self) -> AsyncIterator[bytes]:
        dialect, acc = self._dialect, self._acc
        try:
            async for sse in iter_sse_events(self._upstream):
                if self._is_disconnected is not None and await self._is_disconnected():
                    logger.info("Caller disconnected, cancelling stream %s", self._request_id)
                    return
                if sse.data.strip() == "[DONE]":
                    for out in self._encode(dialect.finish_stream(acc)):
                        yield out
                    return

                try:
                    chunk = json.loads(sse.data)
                except json.JSONDecodeError:
                    logger.warning("Malformed upstream event in stream %s", self._request_id)
                    for out in self._encode(
                        dialect.stream_error(UpstreamError("Malformed upstream stream event"), acc)
                    ):
                        yield out
                    return
                if isinstance(chunk, dict) and chunk.get("error"):
                    err = chunk["error"]
                    message = err.get("message") if isinstance(err, dict) else str(err)
                    error = UpstreamError(f"Upstream stream error: {message}")
                    for out in self._encode(dialect.stream_error(error, acc)):
                        yield out
                    return

                for out in self._encode(dialect.translate_chunk(chunk, acc)):
                    yield out

            logger.debug("Upstream closed stream %s without an end marker", self._request_id)
            for out in self._encode(dialect.finish_stream(acc)):
                yield out
        except httpx.HTTPError as e:
            logger.warning("Upstream stream %s failed: %s", self._request_id, e)
            error = UpstreamError(f"Upstream stream failed: {e}")
            for out in self._encode(dialect.stream_error(error, acc)):
                yield out
        except ProxyError as e:
            logger.error("Stream %s translation failed: %s", self._request_id, e.message)
            for out in self._encode(dialect.stream_error(e, acc)):
                yield out
        finally:
            await self.aclose()
