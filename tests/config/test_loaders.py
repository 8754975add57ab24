"""
Unit tests for config.loaders module.

Tests cover:
- Path resolution (relative vs absolute)
- YAML loading with environment variable expansion
- Error handling (missing files, invalid YAML)
"""

import os

import pytest
import yaml

from agent_bridge.config.loaders import expand_env, load_yaml_with_env_expansion, resolve_config_path


class TestResolveConfigPath:
    """Tests for resolve_config_path function."""

    def test_absolute_path_unchanged(self):
        abs_path = "/etc/agent-bridge/bridge.yaml"
        assert resolve_config_path(abs_path) == abs_path

    def test_relative_path_resolved_against_project_root(self):
        """Relative paths should resolve next to the agent_bridge package."""
        result = resolve_config_path("config/bridge.yaml")

        assert os.path.isabs(result)
        assert result.endswith(os.path.join("config", "bridge.yaml"))
        project_root = os.path.dirname(os.path.dirname(result))
        assert os.path.isdir(os.path.join(project_root, "agent_bridge"))

    def test_sample_config_ships_with_project(self):
        assert os.path.exists(resolve_config_path("config/bridge.yaml"))


class TestLoadYamlWithEnvExpansion:
    """Tests for load_yaml_with_env_expansion function."""

    def test_load_simple_yaml(self, tmp_path):
        config_file = tmp_path / "bridge.yaml"
        config_file.write_text(
            """
capture:
  chunk_ms: 40
  vad_threshold_rms: 700
link:
  idle_close_sec: 60
"""
        )

        result = load_yaml_with_env_expansion(str(config_file))

        assert result['capture']['chunk_ms'] == 40
        assert result['capture']['vad_threshold_rms'] == 700
        assert result['link']['idle_close_sec'] == 60

    def test_env_var_expansion(self, tmp_path, monkeypatch):
        """Should expand ${VAR} references before parsing."""
        monkeypatch.setenv("BRIDGE_HEALTH_PORT", "9090")
        config_file = tmp_path / "bridge.yaml"
        config_file.write_text("health:\n  port: ${BRIDGE_HEALTH_PORT}\n")

        result = load_yaml_with_env_expansion(str(config_file))

        # YAML parser converts numeric strings to int
        assert result['health']['port'] == 9090

    def test_missing_env_var_left_unchanged(self, tmp_path):
        config_file = tmp_path / "bridge.yaml"
        config_file.write_text("agent:\n  agent_id: ${NONEXISTENT_BRIDGE_VAR}\n")

        result = load_yaml_with_env_expansion(str(config_file))

        assert result['agent']['agent_id'] == '${NONEXISTENT_BRIDGE_VAR}'

    def test_empty_file_returns_empty_dict(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")

        assert load_yaml_with_env_expansion(str(config_file)) == {}

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError) as excinfo:
            load_yaml_with_env_expansion(str(tmp_path / "nope.yaml"))
        assert "Configuration file not found" in str(excinfo.value)

    def test_invalid_yaml_raises(self, tmp_path):
        config_file = tmp_path / "broken.yaml"
        config_file.write_text("capture: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_yaml_with_env_expansion(str(config_file))

    def test_non_mapping_document_rejected(self, tmp_path):
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- capture\n- link\n")

        with pytest.raises(yaml.YAMLError):
            load_yaml_with_env_expansion(str(config_file))


class TestExpandEnv:
    """Tests for ${VAR:-default} handling."""

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("BRIDGE_TEST_FORMAT", raising=False)

        assert expand_env("format: ${BRIDGE_TEST_FORMAT:-json}") == "format: json"

    def test_default_used_when_empty(self, monkeypatch):
        monkeypatch.setenv("BRIDGE_TEST_FORMAT", "")

        assert expand_env("format: ${BRIDGE_TEST_FORMAT:-json}") == "format: json"

    def test_value_wins_over_default(self, monkeypatch):
        monkeypatch.setenv("BRIDGE_TEST_FORMAT", "console")

        assert expand_env("format: ${BRIDGE_TEST_FORMAT:-json}") == "format: console"

    def test_empty_default_parses_as_null(self, tmp_path, monkeypatch):
        monkeypatch.delenv("BRIDGE_TEST_LOG_FILE", raising=False)
        config_file = tmp_path / "bridge.yaml"
        config_file.write_text("logging:\n  file_path: ${BRIDGE_TEST_LOG_FILE:-}\n")

        assert load_yaml_with_env_expansion(str(config_file))['logging']['file_path'] is None
