"""Shared test fixtures and mock data."""

from __future__ import annotations

import asyncio

import pytest

from copilotlink.config import Settings, reset_settings
from copilotlink.models import Capability, ModelDescriptor

COPILOT_URL = "https://api.githubcopilot.com"
TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"

# Sample models for testing
SAMPLE_MODELS = [
    ModelDescriptor(
        id="gpt-4.1",
        name="GPT-4.1",
        vendor="Azure OpenAI",
        context_window=128_000,
        capabilities=frozenset(
            {Capability.VISION, Capability.TOOL_CALLS, Capability.STREAMING}
        ),
    ),
    ModelDescriptor(
        id="claude-sonnet-4",
        name="Claude Sonnet 4",
        vendor="Anthropic",
        context_window=200_000,
        capabilities=frozenset(
            {Capability.VISION, Capability.TOOL_CALLS, Capability.STREAMING}
        ),
    ),
    ModelDescriptor(
        id="o1-mini",
        name="o1-mini",
        vendor="Azure OpenAI",
        context_window=128_000,
        capabilities=frozenset({Capability.STREAMING}),
        supports_system_role=False,
    ),
]


class FakeClock:
    """Manually advanced clock; ``sleep`` moves time forward instead of waiting."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def upstream_completion(
    content: str | None = "Hello!",
    *,
    tool_calls: list[dict] | None = None,
    finish_reason: str = "stop",
    usage: dict | None = None,
) -> dict:
    """A non-streamed Copilot chat completion."""
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-upstream",
        "created": 1_700_000_000,
        "model": "gpt-4.1-2025-04-14",
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": usage
        if usage is not None
        else {"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8},
    }


def text_chunk(text: str) -> dict:
    return {"id": "c1", "choices": [{"index": 0, "delta": {"content": text}}]}


def tool_chunk(
    index: int, arguments: str, call_id: str | None = None, name: str | None = None
) -> dict:
    call: dict = {"index": index, "function": {"arguments": arguments}}
    if call_id:
        call["id"] = call_id
        call["type"] = "function"
    if name:
        call["function"]["name"] = name
    return {"id": "c1", "choices": [{"index": 0, "delta": {"tool_calls": [call]}}]}


def finish_chunk(reason: str = "stop") -> dict:
    return {"id": "c1", "choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


def usage_chunk(prompt: int = 7, completion: int = 4) -> dict:
    return {
        "id": "c1",
        "choices": [],
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        },
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the user's config and token file."""
    return Settings(
        github_token="gho_test_github_token",
        github_token_path=str(tmp_path / "github_token"),
    )


@pytest.fixture(autouse=True)
def _reset_settings():
    """Reset global settings between tests."""
    reset_settings()
    yield
    reset_settings()
