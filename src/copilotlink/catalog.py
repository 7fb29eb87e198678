"""ModelCatalog: loads and caches model metadata from the Copilot API."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from copilotlink.auth import TokenStore
from copilotlink.config import Settings
from copilotlink.models import Capability, ModelDescriptor
from copilotlink.upstream import CopilotClient

logger = logging.getLogger(__name__)

# Copilot "supports" keys -> capability flags
_SUPPORT_FLAGS: dict[str, Capability] = {
    "vision": Capability.VISION,
    "tool_calls": Capability.TOOL_CALLS,
    "parallel_tool_calls": Capability.PARALLEL_TOOL_CALLS,
    "streaming": Capability.STREAMING,
    "structured_outputs": Capability.STRUCTURED_OUTPUTS,
}

# Model families that reject a "system" role message
_NO_SYSTEM_ROLE_PREFIXES = ("o1-mini", "o1-preview")

# claude-sonnet-4-20250514 -> claude-sonnet-4
_DATED_SUFFIX = re.compile(r"-\d{8}$")


def _apply_overrides(
    descriptor: ModelDescriptor,
    overrides: dict[str, dict[str, Any]] | None,
) -> ModelDescriptor:
    """Apply user-configured overrides if present."""
    if not overrides:
        return descriptor
    override = overrides.get(descriptor.id)
    if not override:
        return descriptor
    update: dict[str, Any] = {}
    if "capabilities" in override:
        update["capabilities"] = frozenset(Capability(c) for c in override["capabilities"])
    if "context_window" in override:
        update["context_window"] = int(override["context_window"])
    if "supports_system_role" in override:
        update["supports_system_role"] = bool(override["supports_system_role"])
    return descriptor.model_copy(update=update)


def _parse_copilot_model(data: dict[str, Any]) -> ModelDescriptor | None:
    """Parse a Copilot ``/models`` entry; returns None for non-chat models."""
    caps = data.get("capabilities") or {}
    if caps.get("type", "chat") != "chat":
        return None

    model_id = data.get("id", "")
    limits = caps.get("limits") or {}
    supports = caps.get("supports") or {}

    capabilities = frozenset(flag for key, flag in _SUPPORT_FLAGS.items() if supports.get(key))
    if limits.get("vision") and Capability.VISION not in capabilities:
        capabilities = capabilities | {Capability.VISION}

    context_window = limits.get("max_context_window_tokens") or limits.get(
        "max_prompt_tokens", 0
    )

    return ModelDescriptor(
        id=model_id,
        name=data.get("name", model_id),
        vendor=data.get("vendor", ""),
        context_window=int(context_window or 0),
        max_output_tokens=limits.get("max_output_tokens"),
        capabilities=capabilities,
        supports_system_role=not model_id.startswith(_NO_SYSTEM_ROLE_PREFIXES),
        supported_endpoints=frozenset(data.get("supported_endpoints") or ()),
    )


class ModelCatalog:
    """Shared-read model catalog.

    Every load builds a fresh mapping and swaps it in with a single
    assignment, so readers see either the old or the new catalog and never
    a partially filled one.
    """

    def __init__(
        self,
        client: CopilotClient | None,
        tokens: TokenStore | None,
        settings: Settings,
    ) -> None:
        self._client = client
        self._tokens = tokens
        self._settings = settings
        self._models: Mapping[str, ModelDescriptor] = MappingProxyType({})
        self._last_fetched: float = 0.0

    @property
    def models(self) -> Mapping[str, ModelDescriptor]:
        return self._models

    @property
    def last_fetched(self) -> float:
        return self._last_fetched

    def replace(self, descriptors: list[ModelDescriptor]) -> None:
        """Atomically install a new catalog."""
        overrides = self._settings.model_overrides
        fresh = {d.id: _apply_overrides(d, overrides) for d in descriptors}
        self._models = MappingProxyType(fresh)
        self._last_fetched = time.time()

    async def load(self) -> int:
        """Fetch the catalog, raising on failure. Returns count of models loaded."""
        if self._settings.local_models_file:
            return self.load_from_file(self._settings.local_models_file)
        if self._client is None or self._tokens is None:
            raise RuntimeError("No upstream client configured and no local models file")

        credential = await self._tokens.get_valid()
        entries = await self._client.list_models(credential)
        descriptors = [d for d in (_parse_copilot_model(e) for e in entries) if d is not None]
        self.replace(descriptors)
        return len(descriptors)

    async def refresh(self) -> None:
        """Reload the catalog; on failure keep serving the stale one."""
        try:
            count = await self.load()
        except Exception as e:
            logger.warning(
                "Model catalog refresh failed, keeping %d cached models: %s", len(self._models), e
            )
            return
        logger.info("Model catalog refreshed: %d models", count)

    def load_from_file(self, path: str | Path) -> int:
        """Load models from a local YAML file. Returns count of models loaded."""
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict) or "models" not in data:
            raise ValueError(f"Invalid models file: expected a 'models' key in {path}")

        descriptors = [ModelDescriptor(**entry) for entry in data["models"]]
        self.replace(descriptors)
        return len(descriptors)

    def lookup(self, model_id: str) -> ModelDescriptor | None:
        """Find a model by exact id, then by its undated family id."""
        models = self._models
        found = models.get(model_id)
        if found is None:
            undated = _DATED_SUFFIX.sub("", model_id)
            if undated != model_id:
                found = models.get(undated)
        return found

    def list_all(self) -> list[ModelDescriptor]:
        """Return all loaded models sorted by id."""
        return sorted(self._models.values(), key=lambda m: m.id)
