"""Pydantic data models for copilotlink."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


class Capability(str, Enum):
    """Per-model feature flags advertised by the upstream catalog."""

    VISION = "vision"
    TOOL_CALLS = "tool_calls"
    PARALLEL_TOOL_CALLS = "parallel_tool_calls"
    STREAMING = "streaming"
    STRUCTURED_OUTPUTS = "structured_outputs"


class AdmissionDecision(str, Enum):
    """Outcome of the admission checks for one request."""

    WAIT = "wait"
    REJECT = "reject"
    APPROVE = "approve"
    DENY = "deny"


class Credential(BaseModel):
    """Long-lived GitHub token plus the short-lived Copilot token derived from it."""

    model_config = ConfigDict(frozen=True)

    github_token: str
    upstream_token: str
    expires_at: float = Field(description="Unix timestamp at which upstream_token expires")
    api_base: str | None = Field(
        default=None, description="API base URL advertised by the token exchange"
    )

    def expires_within(self, margin: float, now: float | None = None) -> bool:
        """True if the token is expired or will be within *margin* seconds."""
        current = time.time() if now is None else now
        return current + margin >= self.expires_at


class DeviceCode(BaseModel):
    """Device authorization grant issued by GitHub."""

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int = 900
    interval: int = 5


class ModelDescriptor(BaseModel):
    """Metadata for a single upstream model."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Model identifier, e.g. 'gpt-4.1'")
    name: str = Field(default="", description="Human-readable model name")
    vendor: str = Field(default="", description="Model vendor, e.g. 'Anthropic'")
    context_window: int = Field(default=0, description="Maximum context length in tokens")
    max_output_tokens: int | None = None
    capabilities: frozenset[Capability] = Field(default_factory=frozenset)
    supports_system_role: bool = True
    supported_endpoints: frozenset[str] = Field(
        default_factory=frozenset,
        description="Upstream paths that serve the model, e.g. '/responses'",
    )

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def serves(self, path: str) -> bool:
        return path in self.supported_endpoints


class AdmissionTicket(BaseModel):
    """Per-request record of the admission outcome. Never persisted."""

    request_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    arrival_time: float
    decision: AdmissionDecision | None = None
    resolved_at: float | None = None


class RequestSummary(BaseModel):
    """What an operator sees when asked to approve a request."""

    request_id: str
    dialect: str
    model: str
    stream: bool = False
    message_count: int = 0
    last_message: str = ""


class CanonicalRequest(BaseModel):
    """Upstream request that every dialect translates into.

    Usually a chat-completions request. Responses bodies forwarded to the
    native ``/responses`` endpoint carry ``input`` instead of ``messages``.
    Fields the proxy does not interpret (``stop``, ``response_format``,
    ``input``, ...) ride along as extras and are sent upstream unchanged.
    """

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[dict[str, Any]] = Field(default_factory=list)
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stream: bool = False

    _caller_model: str | None = PrivateAttr(default=None)

    @property
    def caller_model(self) -> str:
        """Model id as the caller spelled it; responses echo this back."""
        return self._caller_model or self.model

    def remember_caller_model(self, model: str) -> None:
        self._caller_model = model

    @property
    def input_items(self) -> list[dict[str, Any]]:
        """Responses-style ``input`` as a list of items; empty for chat requests."""
        raw = (self.model_extra or {}).get("input")
        if isinstance(raw, str):
            return [{"role": "user", "content": raw}]
        if isinstance(raw, list):
            return [item for item in raw if isinstance(item, dict)]
        return []

    @property
    def turns(self) -> list[dict[str, Any]]:
        return self.messages or self.input_items

    def to_payload(self) -> dict[str, Any]:
        """JSON body for the upstream call; unset optional fields are omitted."""
        payload = self.model_dump(exclude_none=True)
        if not self.messages and "input" in payload:
            del payload["messages"]
        return payload

    @property
    def has_images(self) -> bool:
        for turn in self.turns:
            content = turn.get("content")
            if isinstance(content, list) and any(
                isinstance(part, dict) and part.get("type") in ("image_url", "input_image")
                for part in content
            ):
                return True
        return False

    @property
    def initiator(self) -> str:
        """``agent`` when the turn continues a tool loop, ``user`` otherwise."""
        turns = self.turns
        if not turns:
            return "user"
        last = turns[-1]
        if last.get("role") in ("assistant", "tool"):
            return "agent"
        if last.get("type") in ("function_call", "function_call_output"):
            return "agent"
        return "user"
