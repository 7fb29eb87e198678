"""Settings loading from environment variables and config files."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

_CONFIG_DIR = Path.home() / ".config" / "copilotlink"
_DEFAULT_CONFIG_PATH = _CONFIG_DIR / "config.yaml"

FieldAction = Literal["reject", "ignore"]


class Settings(BaseModel):
    """Application settings."""

    github_token: str = Field(default="", description="Long-lived GitHub OAuth token")
    github_token_path: str = Field(
        default=str(_CONFIG_DIR / "github_token"),
        description="Where a device-flow token is stored and read back from",
    )
    account_type: str = Field(
        default="individual", description="individual, business or enterprise"
    )
    vscode_version: str = Field(default="1.99.3", description="Editor version sent upstream")
    proxy_host: str = Field(default="127.0.0.1")
    proxy_port: int = Field(default=4141)
    token_refresh_margin: float = Field(
        default=60.0, description="Seconds before expiry at which a token counts as stale"
    )
    device_flow_timeout: float = Field(
        default=900.0, description="Overall deadline for device-flow polling, in seconds"
    )
    upstream_timeout: float = Field(default=600.0, description="Upstream HTTP timeout")
    models_refresh_interval: float = Field(
        default=3600.0, description="Background model catalog refresh period in seconds"
    )
    local_models_file: str | None = Field(
        default=None, description="Path to a local models YAML file for offline use"
    )
    model_overrides: dict[str, dict[str, Any]] | None = Field(
        default=None,
        description="Per-model capability/context-window/system-role overrides",
    )
    rate_limit_seconds: float | None = Field(
        default=None, description="Minimum interval between forwarded requests"
    )
    rate_limit_wait: bool = Field(
        default=False, description="Wait instead of failing when the rate limit is hit"
    )
    manual_approve: bool = Field(default=False, description="Require operator approval")
    approval_timeout: float = Field(
        default=60.0, description="Seconds before a pending approval resolves to deny"
    )
    field_policy: dict[str, dict[str, FieldAction]] = Field(
        default_factory=dict,
        description="Per-dialect overrides for unsupported request fields",
    )
    show_token: bool = Field(default=False, description="Log tokens on fetch and refresh")
    verbose: bool = Field(default=False)

    @property
    def copilot_base_url(self) -> str:
        if self.account_type == "individual":
            return "https://api.githubcopilot.com"
        return f"https://api.{self.account_type}.githubcopilot.com"


def _as_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from environment variables, then overlay config file values."""
    env_values: dict[str, Any] = {}

    env_map = {
        "COPILOTLINK_GITHUB_TOKEN_PATH": "github_token_path",
        "COPILOTLINK_ACCOUNT_TYPE": "account_type",
        "COPILOTLINK_VSCODE_VERSION": "vscode_version",
        "COPILOTLINK_HOST": "proxy_host",
        "COPILOTLINK_PORT": "proxy_port",
        "COPILOTLINK_TOKEN_REFRESH_MARGIN": "token_refresh_margin",
        "COPILOTLINK_DEVICE_FLOW_TIMEOUT": "device_flow_timeout",
        "COPILOTLINK_UPSTREAM_TIMEOUT": "upstream_timeout",
        "COPILOTLINK_MODELS_REFRESH_INTERVAL": "models_refresh_interval",
        "COPILOTLINK_LOCAL_MODELS": "local_models_file",
        "COPILOTLINK_RATE_LIMIT": "rate_limit_seconds",
        "COPILOTLINK_APPROVAL_TIMEOUT": "approval_timeout",
    }
    bool_env_map = {
        "COPILOTLINK_RATE_LIMIT_WAIT": "rate_limit_wait",
        "COPILOTLINK_MANUAL_APPROVE": "manual_approve",
        "COPILOTLINK_SHOW_TOKEN": "show_token",
        "COPILOTLINK_VERBOSE": "verbose",
    }

    for env_var, field_name in env_map.items():
        val = os.environ.get(env_var)
        if val is not None:
            env_values[field_name] = val
    for env_var, field_name in bool_env_map.items():
        val = os.environ.get(env_var)
        if val is not None:
            env_values[field_name] = _as_bool(val)

    # GH_TOKEN wins over GITHUB_TOKEN, matching the gh CLI
    for env_var in ("GITHUB_TOKEN", "GH_TOKEN"):
        val = os.environ.get(env_var)
        if val:
            env_values["github_token"] = val.strip()

    # Load config file (lower priority than env vars)
    path = config_path or _DEFAULT_CONFIG_PATH
    file_values: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f)
            if isinstance(data, dict):
                file_values = data

    merged = {**file_values, **env_values}
    return Settings(**merged)


# Singleton for convenience
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset cached settings (useful for testing)."""
    global _settings
    _settings = None
