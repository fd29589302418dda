from pathlib import Path
from typing import Optional
import os

from moon_registry.services.registry import Registry

REGISTRY_ROOT_ENV_VAR = "MOON_REGISTRY_DIR"

_registry: Optional[Registry] = None


def get_registry_root() -> Path:
    env_path = os.environ.get(REGISTRY_ROOT_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return Path.cwd()


def get_registry() -> Registry:
    global _registry
    if _registry is None:
        _registry = Registry.load(get_registry_root())
    return _registry


def set_registry(registry: Optional[Registry]) -> None:
    """Install the registry served by the API (used by the CLI and tests)."""
    global _registry
    _registry = registry
