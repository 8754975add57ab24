"""
Security-critical configuration injection.

SECURITY POLICY:
- Bot tokens and API keys MUST NEVER be in YAML files
- All credentials come from environment variables only
- Any credential found in YAML is discarded
"""

import os
from typing import Any, Dict, Optional

from agent_bridge.errors import ConfigurationError


def _is_nonempty_string(val: Any) -> bool:
    return isinstance(val, str) and val.strip() != ""


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if _is_nonempty_string(value):
            return value.strip()
    return None


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config_data.get(name)
    if not isinstance(section, dict):
        section = {}
        config_data[name] = section
    return section


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def inject_discord_credentials(config_data: Dict[str, Any]) -> None:
    """
    Inject Discord credentials from environment variables ONLY.

    Environment variables:
    - DISCORD_TOKEN (required to run the bot)
    - DISCORD_APP_ID or APP_ID (command registration)
    - DISCORD_GUILD_ID or GUILD_ID (command registration)
    """
    discord_cfg = _section(config_data, 'discord')
    discord_cfg['token'] = _first_env("DISCORD_TOKEN")
    # Identifiers are not secret; YAML may provide them when env does not
    discord_cfg['app_id'] = _first_env("DISCORD_APP_ID", "APP_ID") or discord_cfg.get('app_id')
    discord_cfg['guild_id'] = _first_env("DISCORD_GUILD_ID", "GUILD_ID") or discord_cfg.get('guild_id')


def inject_agent_credentials(config_data: Dict[str, Any]) -> None:
    """
    Inject ElevenLabs agent credentials from environment variables ONLY.

    Environment variables:
    - ELEVENLABS_API_KEY or ELEVEN_API_KEY
    - ELEVENLABS_AGENT_ID or ELEVEN_AGENT_ID
    - USE_SIGNED_URL (optional, true|false)
    """
    agent_cfg = _section(config_data, 'agent')
    agent_cfg['api_key'] = _first_env("ELEVENLABS_API_KEY", "ELEVEN_API_KEY")
    agent_cfg['agent_id'] = _first_env("ELEVENLABS_AGENT_ID", "ELEVEN_AGENT_ID") or agent_cfg.get('agent_id')
    use_signed = os.getenv("USE_SIGNED_URL")
    if _is_nonempty_string(use_signed):
        agent_cfg['use_signed_url'] = _parse_bool(use_signed)


def inject_runtime_overrides(config_data: Dict[str, Any]) -> None:
    """Apply non-secret env overrides kept for compatibility (PORT, LOG_LEVEL, CHUNK_MS)."""
    port = os.getenv("PORT")
    if _is_nonempty_string(port):
        _section(config_data, 'health')['port'] = _parse_int("PORT", port)
    level = os.getenv("LOG_LEVEL")
    if _is_nonempty_string(level):
        _section(config_data, 'logging')['level'] = level.strip().lower()
    chunk_ms = os.getenv("CHUNK_MS")
    if _is_nonempty_string(chunk_ms):
        _section(config_data, 'capture')['chunk_ms'] = _parse_int("CHUNK_MS", chunk_ms)
