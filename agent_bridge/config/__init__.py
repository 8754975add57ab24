"""
Configuration package for the agent bridge.

- loaders: YAML file loading and parsing
- security: credential injection from the environment
- defaults: default value application
"""

import os
from typing import List, Optional, Tuple

import structlog
from dotenv import load_dotenv

from agent_bridge.config.defaults import (
    apply_agent_defaults,
    apply_capture_defaults,
    apply_playback_defaults,
)
from agent_bridge.config.loaders import load_yaml_with_env_expansion, resolve_config_path
from agent_bridge.config.models import (
    AgentConfig,
    BridgeConfig,
    CaptureConfig,
    DiscordConfig,
    HealthConfig,
    LinkConfig,
    LoggingConfig,
    PlaybackConfig,
)
from agent_bridge.config.security import (
    inject_agent_credentials,
    inject_discord_credentials,
    inject_runtime_overrides,
)
from agent_bridge.errors import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/bridge.yaml"


def load_config(path: Optional[str] = None, *, env_file: Optional[str] = ".env") -> BridgeConfig:
    """
    Load and validate configuration.

    Phases: .env → YAML (optional, with ${VAR} expansion) → credential
    injection from the environment → defaults → Pydantic validation.
    """
    if env_file:
        load_dotenv(env_file, override=False)

    config_data = {}
    if path is None:
        candidate = resolve_config_path(os.getenv("BRIDGE_CONFIG", DEFAULT_CONFIG_PATH))
        if os.path.exists(candidate):
            config_data = load_yaml_with_env_expansion(candidate)
    else:
        config_data = load_yaml_with_env_expansion(resolve_config_path(path))

    inject_discord_credentials(config_data)
    inject_agent_credentials(config_data)
    inject_runtime_overrides(config_data)

    apply_capture_defaults(config_data)
    apply_agent_defaults(config_data)
    apply_playback_defaults(config_data)

    return BridgeConfig(**config_data)


def validate_config(config: BridgeConfig, *, require_discord: bool = True) -> Tuple[List[str], List[str]]:
    """Return ``(errors, warnings)``. Errors block startup, warnings are logged."""
    errors: List[str] = []
    warnings: List[str] = []

    if require_discord and not config.discord.token:
        errors.append("Missing DISCORD_TOKEN")
    if not config.agent.agent_id:
        errors.append("Missing ELEVENLABS_AGENT_ID")
    if config.agent.use_signed_url and not config.agent.api_key:
        errors.append("USE_SIGNED_URL is enabled but ELEVENLABS_API_KEY is not set")

    if config.capture.sample_rate != config.agent.input_sample_rate_hz:
        warnings.append(
            f"Capture rate {config.capture.sample_rate} differs from agent input rate "
            f"{config.agent.input_sample_rate_hz}"
        )
    if config.capture.hangover_ms < config.capture.chunk_ms:
        warnings.append("hangover_ms shorter than chunk_ms; utterances may be clipped")
    if config.link.idle_close_sec <= 0:
        warnings.append("idle_close_sec <= 0 disables idle close; the agent link stays open indefinitely")
    if config.logging.level.lower() == "debug":
        warnings.append("Debug logging enabled (per-chunk logging increases log volume)")

    return errors, warnings


def require_valid_config(config: BridgeConfig, *, require_discord: bool = True) -> BridgeConfig:
    """Raise ``ConfigurationError`` on any blocking problem; log warnings."""
    errors, warnings = validate_config(config, require_discord=require_discord)
    for warning in warnings:
        logger.warning("Configuration warning", detail=warning)
    if errors:
        raise ConfigurationError("; ".join(errors))
    return config


__all__ = [
    'AgentConfig',
    'BridgeConfig',
    'CaptureConfig',
    'DiscordConfig',
    'HealthConfig',
    'LinkConfig',
    'LoggingConfig',
    'PlaybackConfig',
    'load_config',
    'validate_config',
    'require_valid_config',
]
