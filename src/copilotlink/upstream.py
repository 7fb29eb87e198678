"""Copilot API client: base URL, headers and the two request modes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

import httpx

from copilotlink.config import Settings
from copilotlink.errors import UpstreamError
from copilotlink.models import CanonicalRequest, Credential

logger = logging.getLogger(__name__)

GITHUB_API_BASE_URL = "https://api.github.com"

_COPILOT_VERSION = "0.26.7"
_EDITOR_PLUGIN_VERSION = f"copilot-chat/{_COPILOT_VERSION}"
_USER_AGENT = f"GitHubCopilotChat/{_COPILOT_VERSION}"
_API_VERSION = "2025-04-01"

_RETRY_BACKOFF = 1.0  # seconds before the single 5xx retry


def github_headers(settings: Settings, github_token: str | None = None) -> dict[str, str]:
    """Headers for api.github.com calls, authenticated when a token is given."""
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "Editor-Version": f"vscode/{settings.vscode_version}",
        "Editor-Plugin-Version": _EDITOR_PLUGIN_VERSION,
        "User-Agent": _USER_AGENT,
        "X-GitHub-Api-Version": _API_VERSION,
        "X-VSCode-User-Agent-Library-Version": "electron-fetch",
    }
    if github_token:
        headers["Authorization"] = f"token {github_token}"
    return headers


def _error_message(resp: httpx.Response) -> str:
    """Pull a short message out of an upstream error body without echoing it."""
    message = f"Upstream request failed with status {resp.status_code}"
    try:
        data = resp.json()
    except ValueError:
        return message
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return f"{message}: {err['message']}"
        if isinstance(data.get("message"), str):
            return f"{message}: {data['message']}"
    return message


class CopilotClient:
    """Thin async client for the Copilot chat API.

    One shared ``httpx.AsyncClient`` is used for every request; the client is
    owned by the caller (the app lifespan) and closed there.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http_client
        self._settings = settings
        self._sleep = sleep

    def base_url(self, credential: Credential) -> str:
        return (credential.api_base or self._settings.copilot_base_url).rstrip("/")

    def headers(
        self,
        credential: Credential,
        *,
        vision: bool = False,
        initiator: str = "user",
    ) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {credential.upstream_token}",
            "Content-Type": "application/json",
            "Copilot-Integration-Id": "vscode-chat",
            "Editor-Version": f"vscode/{self._settings.vscode_version}",
            "Editor-Plugin-Version": _EDITOR_PLUGIN_VERSION,
            "User-Agent": _USER_AGENT,
            "OpenAI-Intent": "conversation-panel",
            "X-GitHub-Api-Version": _API_VERSION,
            "X-Request-Id": str(uuid4()),
            "X-Initiator": initiator,
            "X-VSCode-User-Agent-Library-Version": "electron-fetch",
        }
        if vision:
            headers["Copilot-Vision-Request"] = "true"
        return headers

    def _build_request(
        self, path: str, request: CanonicalRequest, credential: Credential
    ) -> httpx.Request:
        return self._http.build_request(
            "POST",
            f"{self.base_url(credential)}{path}",
            headers=self.headers(
                credential, vision=request.has_images, initiator=request.initiator
            ),
            json=request.to_payload(),
            timeout=self._settings.upstream_timeout,
        )

    async def complete(
        self, path: str, request: CanonicalRequest, credential: Credential
    ) -> dict[str, Any]:
        """Send a non-streaming request. A 5xx is retried once after a backoff."""
        for attempt in (1, 2):
            try:
                resp = await self._http.send(self._build_request(path, request, credential))
            except httpx.HTTPError as e:
                raise UpstreamError(f"Upstream request failed: {e}") from e
            if resp.is_success:
                result: dict[str, Any] = resp.json()
                return result
            error = UpstreamError(_error_message(resp), upstream_status=resp.status_code)
            if error.retryable and attempt == 1:
                logger.warning(
                    "Upstream returned %d for %s, retrying once", resp.status_code, path
                )
                await self._sleep(_RETRY_BACKOFF)
                continue
            raise error
        raise AssertionError("unreachable")

    async def open_stream(
        self, path: str, request: CanonicalRequest, credential: Credential
    ) -> httpx.Response:
        """Open a streamed request and return the response with its body unread.

        The caller owns the returned response and must ``aclose()`` it.
        Streaming requests are never retried.
        """
        try:
            resp = await self._http.send(
                self._build_request(path, request, credential), stream=True
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream request failed: {e}") from e
        if not resp.is_success:
            await resp.aread()
            await resp.aclose()
            raise UpstreamError(_error_message(resp), upstream_status=resp.status_code)
        return resp

    async def list_models(self, credential: Credential) -> list[dict[str, Any]]:
        try:
            resp = await self._http.get(
                f"{self.base_url(credential)}/models",
                headers=self.headers(credential),
                timeout=30.0,
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Failed to fetch models: {e}") from e
        if not resp.is_success:
            raise UpstreamError(_error_message(resp), upstream_status=resp.status_code)
        data: list[dict[str, Any]] = resp.json().get("data", [])
        return data

    async def get_usage(self, credential: Credential) -> dict[str, Any]:
        """Copilot plan and quota snapshot for the signed-in GitHub account."""
        try:
            resp = await self._http.get(
                f"{GITHUB_API_BASE_URL}/copilot_internal/user",
                headers=github_headers(self._settings, credential.github_token),
                timeout=30.0,
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Failed to fetch usage: {e}") from e
        if not resp.is_success:
            raise UpstreamError(_error_message(resp), upstream_status=resp.status_code)
        data: dict[str, Any] = resp.json()
        return data
