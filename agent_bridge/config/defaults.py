"""
Default value application.

Applied after credential injection and before validation so that YAML files
only need to carry the settings an operator actually changes.
"""

from typing import Any, Dict

MIN_CHUNK_MS = 10
MAX_CHUNK_MS = 60


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config_data.get(name)
    if not isinstance(section, dict):
        section = {}
        config_data[name] = section
    return section


def apply_capture_defaults(config_data: Dict[str, Any]) -> None:
    """Clamp the outbound chunk duration to 10..60 ms."""
    capture = _section(config_data, 'capture')
    chunk_ms = capture.get('chunk_ms')
    if chunk_ms is None:
        return
    try:
        chunk_ms = int(chunk_ms)
    except (TypeError, ValueError):
        chunk_ms = 20
    capture['chunk_ms'] = max(MIN_CHUNK_MS, min(MAX_CHUNK_MS, chunk_ms))


def apply_agent_defaults(config_data: Dict[str, Any]) -> None:
    """Keep the capture rate aligned with what the agent expects as input."""
    agent = _section(config_data, 'agent')
    capture = _section(config_data, 'capture')
    if 'input_sample_rate_hz' in agent and 'sample_rate' not in capture:
        capture['sample_rate'] = agent['input_sample_rate_hz']


def apply_playback_defaults(config_data: Dict[str, Any]) -> None:
    """The low watermark can never exceed the buffer ceiling."""
    playback = _section(config_data, 'playback')
    max_ms = playback.get('max_buffer_ms')
    low_ms = playback.get('low_watermark_ms')
    if max_ms is not None and low_ms is not None and int(low_ms) > int(max_ms):
        playback['low_watermark_ms'] = int(max_ms)
