"""
Package index management.

Each source has its own local copy of the package index: a git repository
holding one JSON-lines file per package at ``<owner>/<package>``. This service
keeps those copies up to date and answers metadata queries against them.

Layout under ``<data_dir>/index``:
- the local registry index (and the legacy ``upstream`` source) at the root
- every other named source under ``sources/<name>``
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import aiofiles
from pydantic import ValidationError

from moon_registry.domain.errors import ConfigurationError, IndexReadError, IndexSyncError
from moon_registry.domain.models import (
    MirrorSource,
    PackageEntry,
    PackageMetadata,
    PackageVersion,
    RegistryConfig,
    is_safe_path_component,
    parse_package_id,
)
from moon_registry.domain.registry_utils import match_glob
from moon_registry.services.git_client import GitClient
from moon_registry.services.source_manager import LEGACY_SOURCE_NAME, SourceManager

logger = logging.getLogger(__name__)

INDEX_DIR_NAME = "index"
SOURCES_DIR_NAME = "sources"


class IndexManager:
    """
    Keeps each source's package index available locally and reads it.

    Package metadata is read from disk on every call; nothing is cached in
    memory between calls.
    """

    def __init__(
        self,
        config: RegistryConfig,
        source_manager: SourceManager,
        git: Optional[GitClient] = None,
        logger: logging.Logger = logger,
    ):
        self.config = config
        self.sources = source_manager
        self.git = git or GitClient()
        self.log = logger
        self.index_dir = Path(config.registry.data_dir) / INDEX_DIR_NAME

    @property
    def path(self) -> Path:
        return self.index_dir

    # ========================================================================
    # Index Location
    # ========================================================================

    def _resolve_source(self, source_name: Optional[str]) -> Optional[MirrorSource]:
        source = self.sources.get_source(source_name)
        if source_name and source is None:
            raise ConfigurationError(f"Source '{source_name}' not found")
        return source

    def get_source_index_dir(self, source_name: Optional[str] = None) -> Path:
        """Directory holding the index of *source_name* (default source when omitted)."""
        source = self._resolve_source(source_name)
        if source is None or source.name == LEGACY_SOURCE_NAME:
            return self.index_dir
        return self.index_dir / SOURCES_DIR_NAME / source.name

    def get_package_index_path(self, index_dir: Path, username: str, package_name: str) -> Path:
        if not (is_safe_path_component(username) and is_safe_path_component(package_name)):
            raise ValueError(f"Invalid package name: {username}/{package_name}")
        return index_dir / username / package_name

    # ========================================================================
    # Synchronization
    # ========================================================================

    async def sync_source_index(self, source_name: Optional[str] = None) -> Path:
        """
        Bring the local copy of a source's index up to date.

        Git indexes are cloned on first use and pulled afterwards. A failed
        pull keeps the existing copy and logs a warning; a failed clone raises
        IndexSyncError.

        Returns:
            Path to the synchronized index directory
        """
        source = self.sources.require_source(source_name)
        target = self.get_source_index_dir(source.name)

        if source.index_type == "http":
            target.mkdir(parents=True, exist_ok=True)
            self.log.warning(
                f"Source '{source.name}' uses an HTTP index, which cannot be synchronized yet; "
                f"using the existing contents of {target}"
            )
            return target

        if await self.git.is_repo(target):
            self.log.debug(f"Pulling index updates for source '{source.name}'")
            result = await self.git.pull(target)
            if not result.success:
                self.log.warning(f"Failed to pull index for source '{source.name}': {result.stderr}")
            return target

        if target.exists() and any(target.iterdir()):
            raise IndexSyncError(
                f"Index directory {target} for source '{source.name}' exists but is not a git repository"
            )

        target.parent.mkdir(parents=True, exist_ok=True)
        self.log.info(f"Cloning index for source '{source.name}' from {source.index_url}")
        result = await self.git.clone(source.index_url, target)
        if not result.success:
            raise IndexSyncError(
                f"Failed to clone index for source '{source.name}' from {source.index_url}: {result.stderr}"
            )
        return target

    # ========================================================================
    # Index Querying
    # ========================================================================

    async def _read_package(self, index_dir: Path, username: str, package_name: str) -> Optional[PackageMetadata]:
        if not (is_safe_path_component(username) and is_safe_path_component(package_name)):
            return None
        index_path = self.get_package_index_path(index_dir, username, package_name)
        if not index_path.is_file():
            return None

        versions: List[PackageVersion] = []
        try:
            async with aiofiles.open(index_path, "r", encoding="utf-8") as f:
                async for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    versions.append(PackageVersion.model_validate(json.loads(line)))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            self.log.error(f"Failed to read package index for {username}/{package_name}: {e}")
            raise IndexReadError(index_path, str(e)) from e

        return PackageMetadata(username=username, name=package_name, versions=versions)

    async def get_package_from_source(
        self,
        username: str,
        package_name: str,
        source_name: Optional[str] = None,
    ) -> Optional[PackageMetadata]:
        """
        Read a package's metadata from a source's index.

        Returns None when the package is not in the index. Raises
        IndexReadError when the index file exists but cannot be parsed.
        """
        index_dir = self.get_source_index_dir(source_name)
        return await self._read_package(index_dir, username, package_name)

    async def get_package(self, username: str, package_name: str) -> Optional[PackageMetadata]:
        """Read a package's metadata from the local (root) index."""
        return await self._read_package(self.index_dir, username, package_name)

    def _walk_packages(self, index_dir: Path) -> List[str]:
        if not index_dir.is_dir():
            return []

        packages: List[str] = []
        for user_dir in index_dir.iterdir():
            # Skip .git and friends, and the per-source index tree
            if user_dir.name.startswith(".") or user_dir.name == SOURCES_DIR_NAME:
                continue
            if not user_dir.is_dir():
                continue
            for pkg_path in user_dir.iterdir():
                if pkg_path.name.startswith("."):
                    continue
                if pkg_path.is_file():
                    packages.append(f"{user_dir.name}/{pkg_path.name}")
        return sorted(packages)

    async def list_packages_from_source(self, source_name: Optional[str] = None) -> List[str]:
        """List every package id in a source's index."""
        return self._walk_packages(self.get_source_index_dir(source_name))

    async def list_packages_matching_from_source(
        self,
        pattern: str,
        source_name: Optional[str] = None,
    ) -> List[str]:
        packages = await self.list_packages_from_source(source_name)
        return [p for p in packages if match_glob(p, pattern)]

    async def list_packages(self) -> List[str]:
        """List every package id in the local (root) index."""
        return self._walk_packages(self.index_dir)

    async def list_packages_matching(self, pattern: str) -> List[str]:
        packages = await self.list_packages()
        return [p for p in packages if match_glob(p, pattern)]

    # ========================================================================
    # Local Index
    # ========================================================================

    async def init(self) -> None:
        """Create the local index repository if it does not exist yet."""
        self.index_dir.mkdir(parents=True, exist_ok=True)
        if not await self.git.is_repo(self.index_dir):
            await self.git.init(self.index_dir, self.config.git.branch)
            await self.git.configure_user(self.index_dir, "registry", "registry@local")
            self.log.info("Initialized index repository")

    async def write_package_entry(self, entry: PackageEntry) -> None:
        """Append one version entry to a package's index file in the local index."""
        pkg_id = parse_package_id(entry.name)
        if pkg_id is None:
            raise ValueError(f"Invalid package name: {entry.name}")

        user_dir = self.index_dir / pkg_id.username
        user_dir.mkdir(parents=True, exist_ok=True)
        index_path = self.get_package_index_path(self.index_dir, pkg_id.username, pkg_id.name)

        line = json.dumps(entry.model_dump(exclude_none=True), separators=(",", ":"))
        async with aiofiles.open(index_path, "a", encoding="utf-8") as f:
            await f.write(line + "\n")

        self.log.debug(f"Wrote entry for {entry.name}@{entry.version}")

    async def commit(self, message: str) -> bool:
        """Commit pending index changes. Returns False when there was nothing to commit."""
        if not await self.git.has_changes(self.index_dir):
            self.log.debug("No changes to commit")
            return False

        await self.git.add(self.index_dir, ["."])
        result = await self.git.commit(self.index_dir, message)
        if result.success:
            self.log.debug(f"Committed: {message}")
            await self.git.update_server_info(self.index_dir)
            if self.config.git.auto_push and self.config.git.remote_url:
                await self.push()
        else:
            self.log.error(f"Failed to commit index changes: {result.stderr}")
        return result.success

    async def _ensure_origin(self, remote_url: str) -> None:
        if not await self.git.has_remote(self.index_dir, "origin"):
            await self.git.add_remote(self.index_dir, "origin", remote_url)
        else:
            await self.git.set_remote_url(self.index_dir, "origin", remote_url)

    async def push(self) -> bool:
        remote_url = self.config.git.remote_url
        if not remote_url:
            self.log.warning("No remote URL configured for push")
            return False

        await self._ensure_origin(remote_url)
        result = await self.git.push(self.index_dir, "origin", self.config.git.branch, set_upstream=True)
        if result.success:
            self.log.info("Pushed index to remote")
        else:
            self.log.error(f"Failed to push: {result.stderr}")
        return result.success

    async def pull(self) -> bool:
        if not self.config.git.remote_url:
            self.log.warning("No remote URL configured for pull")
            return False

        await self._ensure_origin(self.config.git.remote_url)
        result = await self.git.pull(self.index_dir, "origin", self.config.git.branch)
        if result.success:
            await self.git.update_server_info(self.index_dir)
        else:
            self.log.error(f"Failed to pull: {result.stderr}")
        return result.success
