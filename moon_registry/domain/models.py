"""
Pydantic models for the package registry mirror.

This module defines all data models used throughout the application, including:
- Registry configuration (sources, legacy upstream block, server and git settings)
- Package index records (versions, JSONL entries, package metadata)
- Mirror requests and dependency resolution results

All models use Pydantic for validation, serialization, and type safety.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Literal, Set

from pydantic import BaseModel, Field, field_validator


DEFAULT_PACKAGE_URL_PATTERN = "${url}/user/${username}/${name}/${version}.zip"

# Placeholders understood by SourceManager.build_package_url
URL_PLACEHOLDERS = ("url", "username", "name", "version")

# Priority used for sources that do not declare one
DEFAULT_SOURCE_PRIORITY = 100

_PLACEHOLDER_RE = re.compile(r"\$\{([^}]*)\}")


SourceType = Literal["mooncakes", "moonbit-registry", "custom"]
IndexType = Literal["git", "http"]
AuthType = Literal["none", "bearer", "basic"]


# ---------------------------------------------------------------------------
# Source Configuration Models
# ---------------------------------------------------------------------------


class SourceAuth(BaseModel):
    """
    Credentials used when fetching archives from a source.

    Any credential field may contain ``${ENV_VAR}`` references. They are kept
    verbatim here and only resolved when request headers are built, so rotated
    secrets take effect without reloading the configuration.
    """

    type: AuthType = Field(
        default="none",
        description="Authentication scheme: 'none', 'bearer' or 'basic'.",
    )
    token: Optional[str] = Field(
        default=None,
        description="Bearer token (may reference an environment variable).",
    )
    username: Optional[str] = Field(
        default=None,
        description="Basic auth username (may reference an environment variable).",
    )
    password: Optional[str] = Field(
        default=None,
        description="Basic auth password (may reference an environment variable).",
    )


class MirrorSource(BaseModel):
    """
    A named upstream registry that packages can be mirrored from.

    Each source carries its own index location, archive URL pattern,
    credentials and priority. Lower priority values are tried first.
    """

    name: str = Field(
        min_length=1,
        description="Unique source name.",
    )
    type: SourceType = Field(
        default="custom",
        description="Kind of registry behind this source.",
    )
    url: str = Field(
        description="Base URL used when expanding the package URL pattern.",
    )
    index_url: str = Field(
        description="Location of the package index (git remote or HTTP endpoint).",
    )
    index_type: IndexType = Field(
        default="git",
        description="How the index is fetched: 'git' or 'http'.",
    )
    package_url_pattern: str = Field(
        default=DEFAULT_PACKAGE_URL_PATTERN,
        description="Archive URL template using ${url}, ${username}, ${name} and ${version}.",
    )
    enabled: bool = Field(
        default=True,
        description="Disabled sources are never used for downloads.",
    )
    priority: Optional[int] = Field(
        default=None,
        ge=0,
        le=1000,
        description="Fallback order (lower = tried first). Defaults to 100 when unset.",
    )
    auth: Optional[SourceAuth] = Field(
        default=None,
        description="Optional credentials for archive downloads.",
    )

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Source name cannot be empty")
        return value

    @field_validator("package_url_pattern", mode="before")
    @classmethod
    def _known_placeholders(cls, value: Optional[str]) -> str:
        if value is None:
            return DEFAULT_PACKAGE_URL_PATTERN
        unknown = unknown_placeholders(value)
        if unknown:
            raise ValueError(
                f"Unknown placeholder(s) in package_url_pattern: {', '.join(unknown)}"
            )
        return value

    @property
    def effective_priority(self) -> int:
        return DEFAULT_SOURCE_PRIORITY if self.priority is None else self.priority


def unknown_placeholders(pattern: str) -> List[str]:
    """Return the ``${...}`` placeholders in *pattern* that are not supported."""
    return [m for m in _PLACEHOLDER_RE.findall(pattern) if m not in URL_PLACEHOLDERS]


# ---------------------------------------------------------------------------
# Registry Configuration Models
# ---------------------------------------------------------------------------


class RegistrySettings(BaseModel):
    name: str = Field(default="local-registry", min_length=1)
    data_dir: str = Field(default="./data", min_length=1)


class UpstreamConfig(BaseModel):
    """
    Deprecated single-upstream configuration block.

    Only consulted when no ``sources`` list is configured; it is turned into an
    implicit source named ``upstream``.
    """

    enabled: bool = True
    url: str = "https://mooncakes.io"
    index_url: str = "https://mooncakes.io/git/index"


class MirrorSettings(BaseModel):
    auto_sync: bool = False
    sync_interval: str = "1h"
    packages: List[str] = Field(default_factory=list)


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    base_url: str = "http://localhost:8080"


class GitSettings(BaseModel):
    remote_url: str = ""
    branch: str = "main"
    auto_push: bool = False


class RegistryConfig(BaseModel):
    """
    Top-level configuration for a registry directory.

    Persisted at: <REGISTRY_ROOT>/registry.yaml
    """

    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    upstream: Optional[UpstreamConfig] = Field(
        default_factory=UpstreamConfig,
        description="Deprecated: use 'sources' instead.",
    )
    sources: List[MirrorSource] = Field(
        default_factory=list,
        description="Named mirror sources, in declaration order.",
    )
    default_source: Optional[str] = Field(
        default=None,
        description="Source used when a mirror request does not name one.",
    )
    mirror: MirrorSettings = Field(default_factory=MirrorSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    git: GitSettings = Field(default_factory=GitSettings)

    @field_validator("sources")
    @classmethod
    def _unique_source_names(cls, value: List[MirrorSource]) -> List[MirrorSource]:
        seen: Set[str] = set()
        for source in value:
            if source.name in seen:
                raise ValueError(f"Duplicate source name: {source.name}")
            seen.add(source.name)
        return value


# ---------------------------------------------------------------------------
# Package Index Models
# ---------------------------------------------------------------------------


class PackageVersion(BaseModel):
    """A single published version as recorded in the index."""

    version: str
    checksum: str
    deps: Dict[str, str] = Field(default_factory=dict)
    yanked: Optional[bool] = None


class PackageEntry(PackageVersion):
    """One line of a package's JSONL index file, as written locally."""

    name: str = Field(description="Full package id in the form 'owner/name'.")


class PackageMetadata(BaseModel):
    """Every known version of one package, read from a source's index."""

    username: str
    name: str
    versions: List[PackageVersion] = Field(default_factory=list)

    @property
    def package_id(self) -> str:
        return f"{self.username}/{self.name}"


class PackageId(BaseModel):
    username: str
    name: str

    def __str__(self) -> str:
        return format_package_id(self.username, self.name)


class PackageVersionId(PackageId):
    version: str

    def __str__(self) -> str:
        return format_package_version_id(self.username, self.name, self.version)


def is_safe_path_component(value: str) -> bool:
    """True if *value* can be used as one file or directory name inside the data dir."""
    return (
        bool(value)
        and value not in (".", "..")
        and not any(c in value for c in ("/", "\\", "\0"))
    )


def parse_package_id(package_id: str) -> Optional[PackageId]:
    """Parse ``owner/name``; anything else yields None."""
    parts = package_id.split("/")
    if len(parts) != 2:
        return None
    username, name = parts
    if not is_safe_path_component(username) or not is_safe_path_component(name):
        return None
    return PackageId(username=username, name=name)


def format_package_id(username: str, name: str) -> str:
    return f"{username}/{name}"


def format_package_version_id(username: str, name: str, version: str) -> str:
    return f"{username}/{name}@{version}"


# ---------------------------------------------------------------------------
# Mirroring Models
# ---------------------------------------------------------------------------


class MirrorOptions(BaseModel):
    """Parameters of a single mirror run."""

    patterns: List[str] = Field(
        default_factory=list,
        description="Glob patterns over package ids (e.g. 'moonbitlang/*').",
    )
    full: bool = Field(
        default=False,
        description="Mirror every package in the index, ignoring patterns for seeding.",
    )
    strict: bool = Field(
        default=False,
        description="Do not follow dependencies at all.",
    )
    quiet: bool = Field(
        default=False,
        description="Suppress warnings about dependencies left out of the mirror.",
    )
    source: Optional[str] = Field(
        default=None,
        description="Source to mirror from. Uses the default source when omitted.",
    )


class DependencyResolution(BaseModel):
    """
    Outcome of resolving a mirror request.

    ``skipped`` maps a dependency id to the packages that required it but
    whose requirement was not followed because the dependency did not match
    any of the requested patterns. ``cached`` is always a subset of
    ``packages``.
    """

    packages: Set[str] = Field(default_factory=set)
    skipped: Dict[str, List[str]] = Field(default_factory=dict)
    cached: Set[str] = Field(default_factory=set)


class MirrorResult(BaseModel):
    downloaded: int = 0
    failed: int = 0


class RegistryStats(BaseModel):
    packages: int = 0
    cached_versions: int = 0
    cache_size: int = 0
