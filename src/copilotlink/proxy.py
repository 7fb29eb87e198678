"""FastAPI proxy server: one endpoint per caller dialect over the Copilot API."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from copilotlink.admission import AdmissionController, ConsoleApprover
from copilotlink.auth import TokenStore
from copilotlink.catalog import ModelCatalog
from copilotlink.config import Settings, get_settings
from copilotlink.dialects import Dialect, get_dialect
from copilotlink.dialects.base import content_to_text, require_model
from copilotlink.errors import (
    AuthError,
    ProxyError,
    RateLimitError,
    RequestDeniedError,
    TranslationError,
    UpstreamError,
    ValidationError,
)
from copilotlink.models import (
    AdmissionDecision,
    CanonicalRequest,
    ModelDescriptor,
    RequestSummary,
)
from copilotlink.streaming import StreamPump
from copilotlink.upstream import CopilotClient

logger = logging.getLogger(__name__)


class ProxyState:
    """Components shared by every request, created once per app lifetime."""

    def __init__(
        self,
        settings: Settings,
        tokens: TokenStore,
        client: CopilotClient,
        catalog: ModelCatalog,
        admission: AdmissionController,
    ) -> None:
        self.settings = settings
        self.tokens = tokens
        self.client = client
        self.catalog = catalog
        self.admission = admission


def build_state(settings: Settings, http_client: httpx.AsyncClient) -> ProxyState:
    """Wire up the shared components without touching the network."""
    tokens = TokenStore(http_client, settings)
    client = CopilotClient(http_client, settings)
    return ProxyState(
        settings=settings,
        tokens=tokens,
        client=client,
        catalog=ModelCatalog(client, tokens, settings),
        admission=AdmissionController(
            min_interval=settings.rate_limit_seconds,
            wait=settings.rate_limit_wait,
            manual_approve=settings.manual_approve,
            approver=ConsoleApprover() if settings.manual_approve else None,
            approval_timeout=settings.approval_timeout,
        ),
    )


async def _refresh_catalog_periodically(catalog: ModelCatalog, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        await catalog.refresh()


def create_app(settings: Settings | None = None, proxy_state: ProxyState | None = None) -> FastAPI:
    """Build the proxy app.

    With *proxy_state* the app serves the given components as they are and
    skips startup (bootstrap, token exchange, catalog load).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create the shared HTTP client and components; startup failures are fatal."""
        if proxy_state is not None:
            app.state.proxy = proxy_state
            yield
            return

        s = settings or get_settings()
        http_client = httpx.AsyncClient(timeout=s.upstream_timeout)
        refresher: asyncio.Task[None] | None = None
        try:
            state = build_state(s, http_client)
            await state.tokens.bootstrap()
            await state.tokens.refresh()
            count = await state.catalog.load()
            logger.info("Loaded %d models", count)
            if not s.local_models_file and s.models_refresh_interval > 0:
                refresher = asyncio.create_task(
                    _refresh_catalog_periodically(state.catalog, s.models_refresh_interval)
                )
            app.state.proxy = state
            logger.info("Proxy ready on http://%s:%d", s.proxy_host, s.proxy_port)
            yield
        finally:
            if refresher is not None:
                refresher.cancel()
            await http_client.aclose()

    app = FastAPI(
        title="copilotlink",
        description="Serves OpenAI, Anthropic and Responses API clients from a Copilot account",
        lifespan=lifespan,
    )

    @app.exception_handler(ProxyError)
    async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        dialect: Dialect = getattr(request.state, "dialect", None) or get_dialect("openai")
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
        headers = None
        if isinstance(exc, RateLimitError):
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after)))}
        return JSONResponse(dialect.error_body(exc), status_code=exc.status_code, headers=headers)

    @app.exception_handler(Exception)
    async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        dialect: Dialect = getattr(request.state, "dialect", None) or get_dialect("openai")
        error = TranslationError("Internal proxy error")
        return JSONResponse(dialect.error_body(error), status_code=error.status_code)

    @app.post("/v1/chat/completions", response_model=None)
    @app.post("/chat/completions", response_model=None, include_in_schema=False)
    async def chat_completions(request: Request) -> Response:
        """OpenAI chat-completions."""
        return await _handle(request, get_dialect("openai"))

    @app.post("/v1/messages", response_model=None)
    async def messages(request: Request) -> Response:
        """Anthropic Messages."""
        return await _handle(request, get_dialect("anthropic"))

    @app.post("/v1/responses", response_model=None)
    @app.post("/responses", response_model=None, include_in_schema=False)
    async def responses(request: Request) -> Response:
        """OpenAI Responses."""
        return await _handle(request, get_dialect("responses"))

    @app.get("/v1/models")
    @app.get("/models", include_in_schema=False)
    async def list_models(request: Request) -> dict[str, Any]:
        """List available models (OpenAI-compatible)."""
        proxy: ProxyState = request.app.state.proxy
        return {
            "object": "list",
            "data": [
                {
                    "id": m.id,
                    "object": "model",
                    "created": 0,
                    "owned_by": m.vendor or "github-copilot",
                    "name": m.name or m.id,
                    "context_window": m.context_window,
                    "capabilities": sorted(c.value for c in m.capabilities),
                }
                for m in proxy.catalog.list_all()
            ],
        }

    @app.get("/usage")
    async def usage(request: Request) -> dict[str, Any]:
        """Copilot plan and quota usage, as GitHub reports it."""
        proxy: ProxyState = request.app.state.proxy
        credential = await proxy.tokens.get_valid()
        return await proxy.client.get_usage(credential)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        from copilotlink import __version__

        return {"status": "ok", "version": __version__}

    return app


def _summarize(request_id: str, dialect: Dialect, request: CanonicalRequest) -> RequestSummary:
    turns = request.turns
    last = turns[-1] if turns else {}
    return RequestSummary(
        request_id=request_id,
        dialect=dialect.name,
        model=request.caller_model,
        stream=request.stream,
        message_count=len(turns),
        last_message=content_to_text(last.get("content")),
    )


def _select_dialect(dialect: Dialect, descriptor: ModelDescriptor | None) -> Dialect:
    """Responses callers go straight to Copilot's /responses when the model is served there."""
    if dialect.name == "responses" and descriptor is not None and descriptor.serves("/responses"):
        return get_dialect("responses-native")
    return dialect


def _streaming_response(pump: StreamPump) -> StreamingResponse:
    # The background close covers a caller that leaves before the body starts
    return StreamingResponse(
        pump.run(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(pump.aclose),
    )


async def _read_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


async def _handle(request: Request, dialect: Dialect) -> Response:
    """validate -> translate -> admit -> approve -> credential -> forward."""
    request.state.dialect = dialect
    proxy: ProxyState = request.app.state.proxy

    body = await _read_body(request)
    model_id = require_model(body)
    descriptor = proxy.catalog.lookup(model_id)
    if descriptor is None and proxy.catalog.models:
        raise ValidationError(
            f"The model '{model_id}' does not exist or you do not have access to it",
            status_code=404,
            param="model",
            code="model_not_found",
        )
    dialect = _select_dialect(dialect, descriptor)
    request.state.dialect = dialect
    upstream_request = dialect.to_upstream(
        body, descriptor, proxy.settings.field_policy.get(dialect.name)
    )

    request_id = uuid4().hex[:12]
    ticket = await proxy.admission.admit(request_id)
    summary = _summarize(request_id, dialect, upstream_request)
    decision = await proxy.admission.approve(ticket, summary)
    if decision is AdmissionDecision.DENY:
        raise RequestDeniedError("Request denied by the proxy operator")

    credential = await proxy.tokens.get_valid()
    logger.info(
        "Request %s: %s model=%s stream=%s",
        request_id,
        dialect.name,
        upstream_request.model,
        upstream_request.stream,
    )

    try:
        if upstream_request.stream:
            upstream = await proxy.client.open_stream(
                dialect.upstream_path, upstream_request, credential
            )
            pump = StreamPump(
                dialect,
                upstream,
                dialect.new_accumulator(upstream_request),
                request.is_disconnected,
                request_id,
            )
            return _streaming_response(pump)
        data = await proxy.client.complete(dialect.upstream_path, upstream_request, credential)
    except UpstreamError as e:
        if e.upstream_status == 401:
            # The Copilot token was revoked early; the next request exchanges a new one
            proxy.tokens.invalidate()
            raise AuthError("Upstream rejected the Copilot token; retry the request") from e
        raise

    return JSONResponse(dialect.from_upstream(data, upstream_request))


app = create_app()
