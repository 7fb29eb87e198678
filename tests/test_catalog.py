"""Tests for ModelCatalog."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
import respx
from httpx import Response

from conftest import COPILOT_URL, SAMPLE_MODELS, TOKEN_URL, FakeClock
from copilotlink.auth import TokenStore
from copilotlink.catalog import ModelCatalog
from copilotlink.config import Settings
from copilotlink.errors import UpstreamError
from copilotlink.models import Capability
from copilotlink.upstream import CopilotClient

_COPILOT_MODELS = {
    "data": [
        {
            "id": "gpt-4.1",
            "name": "GPT-4.1",
            "vendor": "Azure OpenAI",
            "capabilities": {
                "type": "chat",
                "limits": {"max_context_window_tokens": 128000, "max_output_tokens": 16384},
                "supports": {"tool_calls": True, "parallel_tool_calls": True, "streaming": True},
            },
            "supported_endpoints": ["/chat/completions", "/responses"],
        },
        {
            "id": "claude-sonnet-4",
            "name": "Claude Sonnet 4",
            "vendor": "Anthropic",
            "capabilities": {
                "type": "chat",
                "limits": {"max_prompt_tokens": 128000, "vision": {"max_prompt_images": 5}},
                "supports": {"tool_calls": True, "streaming": True},
            },
        },
        {
            "id": "o1-mini",
            "name": "o1-mini",
            "capabilities": {"type": "chat", "limits": {}, "supports": {"streaming": True}},
        },
        {
            "id": "text-embedding-3-small",
            "capabilities": {"type": "embeddings"},
        },
    ]
}


def _catalog(settings: Settings, clock: FakeClock) -> ModelCatalog:
    http_client = httpx.AsyncClient()
    tokens = TokenStore(http_client, settings, clock=clock, sleep=clock.sleep)
    return ModelCatalog(CopilotClient(http_client, settings, sleep=clock.sleep), tokens, settings)


def _mock_token(clock: FakeClock) -> None:
    respx.get(TOKEN_URL).mock(
        return_value=Response(200, json={"token": "t", "expires_at": clock.now + 1800})
    )


class TestLoad:
    @respx.mock
    async def test_parses_upstream_catalog(self, settings: Settings, clock: FakeClock):
        _mock_token(clock)
        respx.get(f"{COPILOT_URL}/models").mock(return_value=Response(200, json=_COPILOT_MODELS))
        catalog = _catalog(settings, clock)

        count = await catalog.load()

        assert count == 3
        assert "text-embedding-3-small" not in catalog.models
        gpt = catalog.lookup("gpt-4.1")
        assert gpt is not None
        assert gpt.context_window == 128000
        assert gpt.max_output_tokens == 16384
        assert gpt.supports(Capability.PARALLEL_TOOL_CALLS)
        assert not gpt.supports(Capability.VISION)
        claude = catalog.lookup("claude-sonnet-4")
        assert claude is not None
        assert claude.supports(Capability.VISION)
        assert claude.context_window == 128000
        assert catalog.lookup("o1-mini").supports_system_role is False
        assert gpt.serves("/responses")
        assert not claude.serves("/responses")

    @respx.mock
    async def test_load_raises_on_failure(self, settings: Settings, clock: FakeClock):
        _mock_token(clock)
        respx.get(f"{COPILOT_URL}/models").mock(return_value=Response(500))
        with pytest.raises(UpstreamError):
            await _catalog(settings, clock).load()

    @respx.mock
    async def test_overrides_applied(self, tmp_path: Path, clock: FakeClock):
        settings = Settings(
            github_token="gho",
            github_token_path=str(tmp_path / "t"),
            model_overrides={"gpt-4.1": {"capabilities": ["vision"], "context_window": 1000}},
        )
        _mock_token(clock)
        respx.get(f"{COPILOT_URL}/models").mock(return_value=Response(200, json=_COPILOT_MODELS))
        catalog = _catalog(settings, clock)
        await catalog.load()

        gpt = catalog.lookup("gpt-4.1")
        assert gpt.capabilities == frozenset({Capability.VISION})
        assert gpt.context_window == 1000


class TestRefresh:
    @respx.mock
    async def test_failed_refresh_keeps_stale_catalog(self, settings: Settings, clock: FakeClock):
        _mock_token(clock)
        respx.get(f"{COPILOT_URL}/models").mock(
            side_effect=[Response(200, json=_COPILOT_MODELS), Response(500), Response(500)]
        )
        catalog = _catalog(settings, clock)
        await catalog.load()
        before = catalog.models

        await catalog.refresh()

        assert catalog.models is before
        assert len(catalog.models) == 3

    def test_replace_swaps_whole_mapping(self, settings: Settings, clock: FakeClock):
        catalog = _catalog(settings, clock)
        catalog.replace(SAMPLE_MODELS)
        old = catalog.models

        catalog.replace(SAMPLE_MODELS[:1])

        # Readers holding the old mapping still see the full old catalog
        assert len(old) == 3
        assert list(catalog.models) == ["gpt-4.1"]
        with pytest.raises(TypeError):
            catalog.models["x"] = SAMPLE_MODELS[0]  # type: ignore[index]


class TestLookup:
    def test_exact_and_dated(self, settings: Settings, clock: FakeClock):
        catalog = _catalog(settings, clock)
        catalog.replace(SAMPLE_MODELS)
        assert catalog.lookup("gpt-4.1").id == "gpt-4.1"
        assert catalog.lookup("claude-sonnet-4-20250514").id == "claude-sonnet-4"
        assert catalog.lookup("unknown-model") is None

    def test_list_all_sorted(self, settings: Settings, clock: FakeClock):
        catalog = _catalog(settings, clock)
        catalog.replace(SAMPLE_MODELS)
        assert [m.id for m in catalog.list_all()] == ["claude-sonnet-4", "gpt-4.1", "o1-mini"]


class TestLocalFile:
    def test_load_from_file(self, tmp_path: Path, settings: Settings, clock: FakeClock):
        models_file = tmp_path / "models.yaml"
        models_file.write_text(
            "models:\n"
            "  - id: local-model\n"
            "    context_window: 32000\n"
            "    capabilities: [tool_calls]\n"
        )
        catalog = _catalog(settings, clock)
        assert catalog.load_from_file(models_file) == 1
        model = catalog.lookup("local-model")
        assert model.context_window == 32000
        assert model.supports(Capability.TOOL_CALLS)

    def test_invalid_file(self, tmp_path: Path, settings: Settings, clock: FakeClock):
        models_file = tmp_path / "models.yaml"
        models_file.write_text("nothing: here\n")
        with pytest.raises(ValueError, match="models"):
            _catalog(settings, clock).load_from_file(models_file)

    async def test_load_prefers_local_file(self, tmp_path: Path, clock: FakeClock):
        models_file = tmp_path / "models.yaml"
        models_file.write_text("models:\n  - id: offline\n")
        settings = Settings(local_models_file=str(models_file))
        catalog = _catalog(settings, clock)
        assert await catalog.load() == 1
        assert catalog.lookup("offline") is not None
