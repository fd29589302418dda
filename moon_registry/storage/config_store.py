"""
Loading and saving ``registry.yaml``.

The file is parsed with PyYAML and validated against the RegistryConfig
pydantic model; missing sections fall back to model defaults.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from moon_registry.domain.errors import ConfigurationError
from moon_registry.domain.models import RegistryConfig

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "registry.yaml"


def find_config_file(start_dir: Optional[Path] = None) -> Optional[Path]:
    """Search *start_dir* and its parents for registry.yaml."""
    directory = (start_dir or Path.cwd()).resolve()
    for candidate_dir in (directory, *directory.parents):
        candidate = candidate_dir / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def parse_config(raw: object, origin: str = "<config>") -> RegistryConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{origin}: configuration must be a mapping")
    try:
        return RegistryConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"{origin}: invalid configuration\n{e}") from e


def load_config(config_path: Optional[Path] = None) -> RegistryConfig:
    """
    Load configuration from *config_path*, or from the nearest registry.yaml.

    Returns default configuration when no file is found.
    """
    path = config_path or find_config_file()
    if path is None or not path.exists():
        logger.debug("No config file found, using defaults")
        return RegistryConfig()

    logger.debug(f"Loading config from {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse config file {path}: {e}") from e
    return parse_config(raw, origin=str(path))


def save_config(config: RegistryConfig, config_path: Path) -> None:
    data = config.model_dump(mode="json", exclude_none=True)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        yaml.safe_dump(data, sort_keys=False, default_flow_style=False),
        encoding="utf-8",
    )
    logger.debug(f"Saved config to {config_path}")


# ---------------------------------------------------------------------------
# Dotted-key access (``server.port``, ``git.remote_url``)
# ---------------------------------------------------------------------------

_MISSING = object()


def get_config_value(config: RegistryConfig, key: str) -> Any:
    """Look up a dotted key; raises ConfigurationError for unknown keys."""
    current: Any = config.model_dump(mode="json")
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            raise ConfigurationError(f"Unknown configuration key: {key}")
        current = current[part]
    return current


def set_config_value(config: RegistryConfig, key: str, value: Any) -> RegistryConfig:
    """
    Return a copy of *config* with the dotted *key* set to *value*.

    Only existing keys can be set, and the result is validated like a
    freshly loaded file.
    """
    data = config.model_dump(mode="json")
    *parents, last = key.split(".")
    current: Any = data
    for part in parents:
        current = current.get(part, _MISSING) if isinstance(current, dict) else _MISSING
        if current is _MISSING:
            raise ConfigurationError(f"Unknown configuration key: {key}")
    if not isinstance(current, dict) or last not in current:
        raise ConfigurationError(f"Unknown configuration key: {key}")

    current[last] = value
    return parse_config(data, origin=key)


def parse_config_value(text: str) -> Any:
    """Interpret a command line value: booleans, numbers, ``[a, b]`` lists, else a string."""
    if text == "true":
        return True
    if text == "false":
        return False

    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        pass

    if text.startswith("[") and text.endswith("]"):
        inner = text[1:-1].strip()
        if not inner:
            return []
        return [item.strip().strip("\"'") for item in inner.split(",")]

    return text.strip("\"'")


def format_config_value(value: Any) -> str:
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return "[" + ", ".join(format_config_value(v) for v in value) + "]"
    if value is None:
        return "(unset)"
    return str(value)
