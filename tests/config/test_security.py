"""
Unit tests for config.security module.

Tests cover:
- Discord credential injection (environment variables only)
- Agent credential injection and aliases
- Runtime overrides (PORT, LOG_LEVEL, CHUNK_MS)
"""

import pytest

from agent_bridge.config.security import (
    _is_nonempty_string,
    inject_agent_credentials,
    inject_discord_credentials,
    inject_runtime_overrides,
)
from agent_bridge.errors import ConfigurationError

CREDENTIAL_VARS = (
    "DISCORD_TOKEN", "DISCORD_APP_ID", "APP_ID", "DISCORD_GUILD_ID", "GUILD_ID",
    "ELEVENLABS_API_KEY", "ELEVEN_API_KEY", "ELEVENLABS_AGENT_ID", "ELEVEN_AGENT_ID",
    "USE_SIGNED_URL", "PORT", "LOG_LEVEL", "CHUNK_MS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in CREDENTIAL_VARS:
        monkeypatch.delenv(name, raising=False)


class TestIsNonemptyString:

    def test_valid_string_returns_true(self):
        assert _is_nonempty_string("hello") is True

    def test_blank_or_non_string_returns_false(self):
        assert _is_nonempty_string("") is False
        assert _is_nonempty_string("   ") is False
        assert _is_nonempty_string(None) is False
        assert _is_nonempty_string(42) is False


class TestInjectDiscordCredentials:

    def test_token_from_environment(self, monkeypatch):
        monkeypatch.setenv("DISCORD_TOKEN", "bot-token")
        config_data = {}
        inject_discord_credentials(config_data)

        assert config_data['discord']['token'] == "bot-token"

    def test_token_in_yaml_is_discarded(self):
        """SECURITY: tokens must never come from YAML."""
        config_data = {'discord': {'token': 'from-yaml'}}
        inject_discord_credentials(config_data)

        assert config_data['discord']['token'] is None

    def test_legacy_id_aliases(self, monkeypatch):
        monkeypatch.setenv("APP_ID", "111")
        monkeypatch.setenv("GUILD_ID", "222")
        config_data = {}
        inject_discord_credentials(config_data)

        assert config_data['discord']['app_id'] == "111"
        assert config_data['discord']['guild_id'] == "222"

    def test_yaml_ids_kept_when_env_missing(self):
        config_data = {'discord': {'guild_id': '333'}}
        inject_discord_credentials(config_data)

        assert config_data['discord']['guild_id'] == '333'


class TestInjectAgentCredentials:

    def test_primary_names(self, monkeypatch):
        monkeypatch.setenv("ELEVENLABS_API_KEY", "xi-key")
        monkeypatch.setenv("ELEVENLABS_AGENT_ID", "agent-1")
        config_data = {}
        inject_agent_credentials(config_data)

        assert config_data['agent']['api_key'] == "xi-key"
        assert config_data['agent']['agent_id'] == "agent-1"

    def test_short_aliases(self, monkeypatch):
        monkeypatch.setenv("ELEVEN_API_KEY", "xi-alias")
        monkeypatch.setenv("ELEVEN_AGENT_ID", "agent-alias")
        config_data = {}
        inject_agent_credentials(config_data)

        assert config_data['agent']['api_key'] == "xi-alias"
        assert config_data['agent']['agent_id'] == "agent-alias"

    def test_api_key_in_yaml_is_discarded(self):
        config_data = {'agent': {'api_key': 'leaked'}}
        inject_agent_credentials(config_data)

        assert config_data['agent']['api_key'] is None

    @pytest.mark.parametrize("raw,expected", [("true", True), ("1", True), ("false", False), ("no", False)])
    def test_use_signed_url_parsed(self, monkeypatch, raw, expected):
        monkeypatch.setenv("USE_SIGNED_URL", raw)
        config_data = {}
        inject_agent_credentials(config_data)

        assert config_data['agent']['use_signed_url'] is expected

    def test_use_signed_url_left_to_defaults_when_unset(self):
        config_data = {}
        inject_agent_credentials(config_data)

        assert 'use_signed_url' not in config_data['agent']


class TestInjectRuntimeOverrides:

    def test_overrides_applied(self, monkeypatch):
        monkeypatch.setenv("PORT", "3000")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("CHUNK_MS", "40")
        config_data = {}
        inject_runtime_overrides(config_data)

        assert config_data['health']['port'] == 3000
        assert config_data['logging']['level'] == "debug"
        assert config_data['capture']['chunk_ms'] == 40

    def test_nothing_set_leaves_config_untouched(self):
        config_data = {'capture': {'chunk_ms': 20}}
        inject_runtime_overrides(config_data)

        assert config_data == {'capture': {'chunk_ms': 20}}

    @pytest.mark.parametrize("name,value", [("PORT", "eighty"), ("CHUNK_MS", "20ms")])
    def test_malformed_integer_raises_configuration_error(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ConfigurationError) as excinfo:
            inject_runtime_overrides({})
        assert name in str(excinfo.value)

    def test_integer_override_tolerates_whitespace(self, monkeypatch):
        monkeypatch.setenv("PORT", " 9090 ")
        config_data = {}
        inject_runtime_overrides(config_data)

        assert config_data['health']['port'] == 9090
