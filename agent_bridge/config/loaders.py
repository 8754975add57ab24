"""
Configuration file loading.

- Relative config paths resolve against the project root, not the CWD
- ``${VAR:-default}`` references fall back to ``default`` when VAR is unset or empty
- plain ``${VAR}`` / ``$VAR`` references are expanded with ``os.path.expandvars``
"""

import os
import re
from pathlib import Path
from typing import Any, Dict

import yaml

# Project root directory (parent of agent_bridge/)
_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()

_DEFAULTED_VAR = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*):-([^}]*)\}')


def resolve_config_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return str(_PROJ_DIR / path)


def expand_env(text: str) -> str:
    """Expand environment references in raw YAML text."""
    text = _DEFAULTED_VAR.sub(lambda m: os.environ.get(m.group(1)) or m.group(2), text)
    return os.path.expandvars(text)


def load_yaml_with_env_expansion(path: str) -> Dict[str, Any]:
    """
    Load a YAML mapping after environment expansion.

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If parsing fails or the document is not a mapping
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    try:
        data = yaml.safe_load(expand_env(raw))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(f"Configuration {path} must be a mapping, got {type(data).__name__}")
    return data
