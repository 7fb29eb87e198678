"""Tests for settings loading."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

from copilotlink.config import Settings, get_settings, load_settings, reset_settings

_CLEAN_ENV = {k: v for k, v in os.environ.items() if k not in ("GITHUB_TOKEN", "GH_TOKEN")}


class TestLoadSettings:
    def test_defaults(self, tmp_path: Path):
        with patch.dict(os.environ, _CLEAN_ENV, clear=True):
            settings = load_settings(tmp_path / "missing.yaml")
        assert settings.proxy_port == 4141
        assert settings.account_type == "individual"
        assert settings.token_refresh_margin == 60.0
        assert settings.rate_limit_seconds is None
        assert settings.field_policy == {}

    def test_env_overrides(self, tmp_path: Path):
        env = {
            **_CLEAN_ENV,
            "COPILOTLINK_PORT": "9000",
            "COPILOTLINK_RATE_LIMIT": "2.5",
            "COPILOTLINK_RATE_LIMIT_WAIT": "true",
            "COPILOTLINK_MANUAL_APPROVE": "0",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = load_settings(tmp_path / "missing.yaml")
        assert settings.proxy_port == 9000
        assert settings.rate_limit_seconds == 2.5
        assert settings.rate_limit_wait is True
        assert settings.manual_approve is False

    def test_gh_token_wins_over_github_token(self, tmp_path: Path):
        env = {**_CLEAN_ENV, "GITHUB_TOKEN": "from-github", "GH_TOKEN": "from-gh"}
        with patch.dict(os.environ, env, clear=True):
            settings = load_settings(tmp_path / "missing.yaml")
        assert settings.github_token == "from-gh"

    def test_config_file_is_overridden_by_env(self, tmp_path: Path):
        config = tmp_path / "config.yaml"
        config.write_text(
            "proxy_port: 5000\n"
            "account_type: business\n"
            "field_policy:\n"
            "  openai:\n"
            "    store: reject\n"
        )
        env = {**_CLEAN_ENV, "COPILOTLINK_PORT": "6000"}
        with patch.dict(os.environ, env, clear=True):
            settings = load_settings(config)
        assert settings.proxy_port == 6000
        assert settings.account_type == "business"
        assert settings.field_policy == {"openai": {"store": "reject"}}

    def test_get_settings_is_cached_until_reset(self):
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first


class TestCopilotBaseUrl:
    def test_individual(self):
        assert Settings().copilot_base_url == "https://api.githubcopilot.com"

    def test_business(self):
        settings = Settings(account_type="business")
        assert settings.copilot_base_url == "https://api.business.githubcopilot.com"
