"""Tests for config loading."""

from pathlib import Path

import pytest

from klaude.config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_SDK_MODEL,
    AppConfig,
    default_config_path,
    env_flag,
    init_config,
    load_config,
)


class TestConfig:
    def test_load_defaults(self, monkeypatch):
        """Loading with no file should return defaults."""
        for var in ("MONGODB_URI", "KLAUDE_DB", "KLAUDE_SOCKET_DIR"):
            monkeypatch.delenv(var, raising=False)
        config = load_config(Path("/nonexistent/config.toml"))
        assert config.mongodb.uri == "mongodb://localhost:27017"
        assert config.mongodb.database == "klaude"
        assert config.wrapper.max_agent_depth == 3
        assert config.wrapper.ipc_timeout_ms == 15000
        assert config.sdk.model == DEFAULT_SDK_MODEL
        assert config.gpt.preferred_runtime == "auto"
        assert config.gpt.fallback_on_error is True
        assert config.wait.timeout_seconds == 570
        assert config.wrapper.agent_retention_seconds == 300

    def test_resolved_dirs_expand_home(self):
        config = AppConfig()
        assert "~" not in str(config.resolved_socket_dir)
        assert "~" not in str(config.resolved_projects_dir)

    def test_init_config(self, tmp_path):
        path = tmp_path / "config.toml"
        result = init_config(path)
        assert result == path
        assert path.exists()
        # Should be loadable
        config = load_config(path)
        assert config.mongodb.database == "klaude"

    def test_file_values(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text(
            '[wrapper]\nmax_agent_depth = 5\n\n[gpt]\npreferred_runtime = "cursor"\nfallback_on_error = false\n'
        )
        config = load_config(path)
        assert config.wrapper.max_agent_depth == 5
        assert config.wrapper.lock_timeout_ms == 5000
        assert config.gpt.preferred_runtime == "cursor"
        assert config.gpt.fallback_on_error is False

    def test_invalid_preferred_runtime(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[gpt]\npreferred_runtime = "copilot"\n')
        with pytest.raises(ValueError, match="preferred_runtime"):
            load_config(path)

    def test_env_overlay(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MONGODB_URI", "mongodb://db:27017")
        monkeypatch.setenv("KLAUDE_DB", "klaude_test")
        monkeypatch.setenv("KLAUDE_SOCKET_DIR", str(tmp_path / "sockets"))
        config = load_config(Path("/nonexistent/config.toml"))
        assert config.mongodb.uri == "mongodb://db:27017"
        assert config.mongodb.database == "klaude_test"
        assert config.resolved_socket_dir == tmp_path / "sockets"

    def test_config_path_from_env(self, monkeypatch, tmp_path):
        path = tmp_path / "alt.toml"
        path.write_text("[wrapper]\nipc_timeout_ms = 250\n")
        monkeypatch.setenv("KLAUDE_CONFIG", str(path))
        assert load_config().wrapper.ipc_timeout_ms == 250

    def test_default_config_path(self, monkeypatch, tmp_path):
        monkeypatch.delenv("KLAUDE_CONFIG", raising=False)
        assert default_config_path() == DEFAULT_CONFIG_PATH
        monkeypatch.setenv("KLAUDE_CONFIG", str(tmp_path / "alt.toml"))
        assert default_config_path() == tmp_path / "alt.toml"

    @pytest.mark.parametrize("value", ["1", "true", "TRUE", "yes", " on "])
    def test_env_flag_truthy(self, monkeypatch, value):
        monkeypatch.setenv("KLAUDE_DEBUG", value)
        assert env_flag("KLAUDE_DEBUG") is True

    @pytest.mark.parametrize("value", ["0", "false", "no", "off", ""])
    def test_env_flag_falsy(self, monkeypatch, value):
        monkeypatch.setenv("KLAUDE_DEBUG", value)
        assert env_flag("KLAUDE_DEBUG") is False

    def test_env_flag_unset(self, monkeypatch):
        monkeypatch.delenv("KLAUDE_DEBUG", raising=False)
        assert env_flag("KLAUDE_DEBUG") is False
