"""
Source table for mirroring.

Normalizes the registry configuration (including the deprecated single
``upstream`` block) into a prioritized set of named sources, and builds the
archive URLs and authentication headers used to fetch from them.
"""
from __future__ import annotations

import base64
import logging
import os
import re
from typing import Dict, List, Optional

from moon_registry.domain.errors import ConfigurationError
from moon_registry.domain.models import (
    DEFAULT_PACKAGE_URL_PATTERN,
    MirrorSource,
    RegistryConfig,
    unknown_placeholders,
)

logger = logging.getLogger(__name__)

LEGACY_SOURCE_NAME = "upstream"

_ENV_REF = re.compile(r"\$\{([^}]+)\}")
_PLACEHOLDER = re.compile(r"\$\{(url|username|name|version)\}")


def resolve_env_refs(value: str) -> str:
    """Replace ``${VAR}`` references with environment values (missing -> "")."""
    return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)


class SourceManager:
    """
    Single source of truth for "which upstream, with what credentials, at what priority".

    Sources are kept in declaration order; that order breaks ties between
    sources of equal priority and picks the default when none is configured.
    """

    def __init__(self, config: RegistryConfig, logger: logging.Logger = logger):
        self.log = logger
        self._sources: Dict[str, MirrorSource] = {}
        self._default_name: Optional[str] = None
        self._load_sources(config)

    def _load_sources(self, config: RegistryConfig) -> None:
        if config.upstream is not None and not config.sources:
            self.log.debug("Using legacy upstream config as source")
            self._sources[LEGACY_SOURCE_NAME] = MirrorSource(
                name=LEGACY_SOURCE_NAME,
                type="mooncakes",
                url=config.upstream.url,
                index_url=config.upstream.index_url,
                index_type="git",
                package_url_pattern=DEFAULT_PACKAGE_URL_PATTERN,
                enabled=config.upstream.enabled,
                priority=0,
            )
            self._default_name = LEGACY_SOURCE_NAME

        for source in config.sources:
            if source.name in self._sources:
                raise ConfigurationError(f"Duplicate source name: {source.name}")
            self._sources[source.name] = source

        if config.sources:
            if config.default_source and config.default_source in self._sources:
                self._default_name = config.default_source
            else:
                if config.default_source:
                    self.log.warning(
                        f"Default source '{config.default_source}' is not configured, "
                        f"using '{config.sources[0].name}'"
                    )
                self._default_name = config.sources[0].name

    # ========================================================================
    # Lookup
    # ========================================================================

    def get_source(self, name: Optional[str] = None) -> Optional[MirrorSource]:
        """Return the named source, or the default source when *name* is omitted."""
        if name:
            return self._sources.get(name)
        return self.get_default_source()

    def require_source(self, name: Optional[str] = None) -> MirrorSource:
        source = self.get_source(name)
        if source is None:
            raise ConfigurationError(f"Source '{name or 'default'}' not found")
        return source

    def get_default_source(self) -> Optional[MirrorSource]:
        if self._default_name is None:
            return None
        return self._sources.get(self._default_name)

    @property
    def default_source_name(self) -> Optional[str]:
        return self._default_name

    def has_source(self, name: str) -> bool:
        return name in self._sources

    def list_sources(self) -> List[MirrorSource]:
        return list(self._sources.values())

    def list_enabled_sources(self) -> List[MirrorSource]:
        """Enabled sources in fallback order (stable sort by priority)."""
        enabled = [s for s in self._sources.values() if s.enabled]
        return sorted(enabled, key=lambda s: s.effective_priority)

    # ========================================================================
    # Mutation
    # ========================================================================

    def add_source(self, source: MirrorSource) -> None:
        if source.name in self._sources:
            raise ConfigurationError(f"Source '{source.name}' already exists")
        self._sources[source.name] = source
        if self._default_name is None:
            self._default_name = source.name
        self.log.debug(f"Added source {source.name}")

    def remove_source(self, name: str) -> MirrorSource:
        source = self._sources.pop(name, None)
        if source is None:
            raise ConfigurationError(f"Source '{name}' not found")
        if self._default_name == name:
            # Fall back to the first remaining source, as loading would
            self._default_name = next(iter(self._sources), None)
        self.log.debug(f"Removed source {name}")
        return source

    def set_default_source(self, name: str) -> None:
        if name not in self._sources:
            raise ConfigurationError(f"Source '{name}' not found")
        self._default_name = name

    def enable_source(self, name: str) -> None:
        self._set_enabled(name, True)

    def disable_source(self, name: str) -> None:
        self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> None:
        source = self._sources.get(name)
        if source is None:
            raise ConfigurationError(f"Source '{name}' not found")
        self._sources[name] = source.model_copy(update={"enabled": enabled})

    # ========================================================================
    # Requests
    # ========================================================================

    def build_package_url(
        self,
        source: MirrorSource,
        username: str,
        name: str,
        version: str,
    ) -> str:
        """Expand the source's archive URL pattern for one package version."""
        pattern = source.package_url_pattern or DEFAULT_PACKAGE_URL_PATTERN
        unknown = unknown_placeholders(pattern)
        if unknown:
            raise ConfigurationError(
                f"Source '{source.name}' has unknown URL placeholder(s): {', '.join(unknown)}"
            )
        values = {
            "url": source.url,
            "username": username,
            "name": name,
            "version": version,
        }
        return _PLACEHOLDER.sub(lambda m: values[m.group(1)], pattern)

    def build_auth_headers(self, source: MirrorSource) -> Dict[str, str]:
        """
        Build request headers for *source*.

        Environment references are resolved on every call so rotated
        credentials are picked up without reloading the configuration.
        """
        auth = source.auth
        if auth is None or auth.type == "none":
            return {}

        if auth.type == "bearer" and auth.token:
            token = resolve_env_refs(auth.token)
            return {"Authorization": f"Bearer {token}"}

        if auth.type == "basic" and auth.username and auth.password:
            username = resolve_env_refs(auth.username)
            password = resolve_env_refs(auth.password)
            credentials = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
            return {"Authorization": f"Basic {credentials}"}

        return {}
