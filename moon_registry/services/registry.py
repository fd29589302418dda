"""
High-level registry operations.

Coordinates the source table, index management, package storage and
dependency resolution for one registry directory.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Literal, Optional

import httpx

from moon_registry.domain.errors import ConfigurationError, IndexReadError, IndexSyncError, RegistryError
from moon_registry.domain.models import (
    MirrorOptions,
    MirrorResult,
    MirrorSource,
    PackageEntry,
    PackageId,
    PackageMetadata,
    PackageVersion,
    RegistryConfig,
    RegistryStats,
    format_package_version_id,
    is_safe_path_component,
    parse_package_id,
)
from moon_registry.domain.registry_utils import match_glob
from moon_registry.services.dependency_resolver import DependencyResolver
from moon_registry.services.git_client import GitClient
from moon_registry.services.index_manager import IndexManager
from moon_registry.services.package_store import PackageStore
from moon_registry.services.source_manager import SourceManager
from moon_registry.storage.config_store import CONFIG_FILE_NAME, load_config, save_config

logger = logging.getLogger(__name__)

SyncMode = Literal["push", "pull"]


class Registry:
    """
    A registry directory: ``registry.yaml`` plus ``<data_dir>/index`` and
    ``<data_dir>/packages``.
    """

    def __init__(
        self,
        config: RegistryConfig,
        root_dir: Path,
        git: Optional[GitClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: logging.Logger = logger,
    ):
        self.config = config
        self.root_dir = root_dir
        self.log = logger
        self.source_manager = SourceManager(config, logger=logger)
        self.index_manager = IndexManager(config, self.source_manager, git=git, logger=logger)
        self.package_store = PackageStore(config, self.source_manager, transport=transport, logger=logger)
        self.dependency_resolver = DependencyResolver(self.index_manager, self.package_store, logger=logger)

    @property
    def config_path(self) -> Path:
        return self.root_dir / CONFIG_FILE_NAME

    @staticmethod
    def _absolute_data_dir(config: RegistryConfig, root_dir: Path) -> None:
        data_dir = Path(config.registry.data_dir).expanduser()
        if not data_dir.is_absolute():
            data_dir = root_dir / data_dir
        config.registry.data_dir = str(data_dir)

    @classmethod
    def load(cls, root_dir: Optional[Path] = None, **kwargs) -> "Registry":
        """Load the registry rooted at *root_dir* (current directory by default)."""
        root = (root_dir or Path.cwd()).resolve()
        config_path = root / CONFIG_FILE_NAME
        config = load_config(config_path) if config_path.exists() else RegistryConfig()
        cls._absolute_data_dir(config, root)
        return cls(config, root, **kwargs)

    @classmethod
    async def init(cls, root_dir: Path, name: Optional[str] = None, **kwargs) -> "Registry":
        """Create a new registry directory with default configuration."""
        root = root_dir.resolve()
        root.mkdir(parents=True, exist_ok=True)

        config = RegistryConfig()
        if name:
            config.registry.name = name
        save_config(config, root / CONFIG_FILE_NAME)

        cls._absolute_data_dir(config, root)
        registry = cls(config, root, **kwargs)
        await registry.package_store.init()
        await registry.index_manager.init()

        registry.log.info(f"Initialized registry at {root}")
        return registry

    # ========================================================================
    # Mirroring
    # ========================================================================

    def _mirror_source(self, source_name: Optional[str]) -> MirrorSource:
        source = self.source_manager.get_source(source_name)
        if source is None:
            if source_name:
                raise ConfigurationError(f"Source '{source_name}' not found")
            raise ConfigurationError("No mirror source configured")
        if not source.enabled:
            raise ConfigurationError(f"Source '{source.name}' is not enabled")
        return source

    async def mirror(self, options: MirrorOptions) -> MirrorResult:
        """
        Mirror packages matching *options* into the local cache.

        Configuration and index problems abort the run. Failures of single
        package versions are logged and counted.
        """
        source = self._mirror_source(options.source)

        self.log.info(f"Updating index for source '{source.name}'...")
        await self.index_manager.sync_source_index(source.name)

        self.log.info("Resolving packages to mirror...")
        resolution = await self.dependency_resolver.resolve(options, source.name)
        await self.dependency_resolver.log_skipped_warnings(resolution, options.quiet, source.name)

        packages = sorted(resolution.packages)
        self.log.info(
            f"Found {len(packages)} packages to mirror ({len(resolution.cached)} already cached)"
        )

        # Versions mirrored from a named source are also recorded in the local
        # index, which is the one served to clients over /git/index
        record_locally = self.index_manager.get_source_index_dir(source.name) != self.index_manager.path
        recorded = 0

        result = MirrorResult()
        for package_id in packages:
            pkg_id = parse_package_id(package_id)
            if pkg_id is None:
                self.log.warning(f"Skipping invalid package id {package_id}")
                result.failed += 1
                continue

            try:
                metadata = await self.index_manager.get_package_from_source(
                    pkg_id.username, pkg_id.name, source.name
                )
            except IndexReadError as e:
                self.log.error(str(e))
                result.failed += 1
                continue

            if metadata is None:
                self.log.warning(f"Package {package_id} not found in index")
                result.failed += 1
                continue

            for version in metadata.versions:
                if version.yanked:
                    continue
                try:
                    if options.source:
                        await self.package_store.download_package(
                            pkg_id.username, pkg_id.name, version.version, version.checksum, source.name
                        )
                    else:
                        await self.package_store.download_package_with_fallback(
                            pkg_id.username, pkg_id.name, version.version, version.checksum
                        )
                    result.downloaded += 1
                    if record_locally and await self._record_version(pkg_id, version):
                        recorded += 1
                except RegistryError as e:
                    vid = format_package_version_id(pkg_id.username, pkg_id.name, version.version)
                    self.log.error(f"Failed to download {vid}: {e}")
                    result.failed += 1

        if recorded:
            await self.index_manager.commit(f"Mirror {recorded} package versions from {source.name}")

        self.log.info(f"Mirrored {result.downloaded} package versions ({result.failed} failed)")
        return result

    async def _record_version(self, pkg_id: PackageId, version: PackageVersion) -> bool:
        """Append *version* to the local index unless it is already listed there."""
        try:
            local = await self.index_manager.get_package(pkg_id.username, pkg_id.name)
        except IndexReadError as e:
            self.log.error(str(e))
            return False
        if local is not None and any(v.version == version.version for v in local.versions):
            return False

        entry = PackageEntry(name=str(pkg_id), **version.model_dump())
        await self.index_manager.write_package_entry(entry)
        return True

    async def sync(self, mode: SyncMode) -> None:
        """Push the local index to, or pull it from, ``git.remote_url``."""
        if not self.config.git.remote_url:
            raise ConfigurationError("No remote URL configured (set git.remote_url)")

        if mode == "push":
            await self.index_manager.commit("Update index")
            ok = await self.index_manager.push()
        elif mode == "pull":
            ok = await self.index_manager.pull()
        else:
            raise ValueError(f"Unknown sync mode: {mode}")

        if not ok:
            raise IndexSyncError(f"Failed to {mode} index (remote {self.config.git.remote_url})")

    # ========================================================================
    # Queries
    # ========================================================================

    def _query_sources(self) -> List[Optional[str]]:
        # Local index first, then every enabled source in fallback order
        names: List[Optional[str]] = [None]
        for source in self.source_manager.list_enabled_sources():
            if self.index_manager.get_source_index_dir(source.name) != self.index_manager.path:
                names.append(source.name)
        return names

    async def get_package(self, username: str, name: str) -> Optional[PackageMetadata]:
        for source_name in self._query_sources():
            if source_name is None:
                metadata = await self.index_manager.get_package(username, name)
            else:
                metadata = await self.index_manager.get_package_from_source(username, name, source_name)
            if metadata is not None:
                return metadata
        return None

    async def list_packages(self) -> List[str]:
        packages = set(await self.index_manager.list_packages())
        for source_name in self._query_sources():
            if source_name is not None:
                packages.update(await self.index_manager.list_packages_from_source(source_name))
        return sorted(packages)

    async def list_packages_matching(self, pattern: str) -> List[str]:
        return [p for p in await self.list_packages() if match_glob(p, pattern)]

    def has_package(self, username: str, name: str, version: str) -> bool:
        return self.package_store.has_package(username, name, version)

    def get_package_file(self, username: str, name: str, version: str) -> Optional[Path]:
        return self.package_store.get_package_file(username, name, version)

    async def fetch_package_file(self, username: str, name: str, version: str) -> Optional[Path]:
        """
        Return the cached archive, downloading it through the enabled sources
        when it is not cached yet. None when it cannot be obtained.
        """
        if not all(is_safe_path_component(c) for c in (username, name, version)):
            return None
        path = self.get_package_file(username, name, version)
        if path is not None:
            return path
        if not self.source_manager.list_enabled_sources():
            return None

        checksum = None
        try:
            metadata = await self.get_package(username, name)
        except IndexReadError as e:
            self.log.error(str(e))
            metadata = None
        if metadata is not None:
            checksum = next((v.checksum for v in metadata.versions if v.version == version), None)

        vid = format_package_version_id(username, name, version)
        self.log.info(f"Fetching {vid} from upstream")
        try:
            return await self.package_store.download_package_with_fallback(username, name, version, checksum)
        except RegistryError as e:
            self.log.error(f"Failed to fetch {vid}: {e}")
            return None

    async def get_stats(self) -> RegistryStats:
        packages = await self.list_packages()
        cached = await self.package_store.list_cached()
        size = await self.package_store.get_cache_size()
        return RegistryStats(packages=len(packages), cached_versions=len(cached), cache_size=size)

    # ========================================================================
    # Source Table
    # ========================================================================

    def list_sources(self) -> List[MirrorSource]:
        return self.source_manager.list_sources()

    def _store_sources(self) -> None:
        self.config.sources = self.source_manager.list_sources()
        self.config.default_source = self.source_manager.default_source_name
        self.save_config()

    def add_source(self, source: MirrorSource) -> None:
        self.source_manager.add_source(source)
        self._store_sources()

    def remove_source(self, name: str) -> None:
        self.source_manager.remove_source(name)
        self._store_sources()

    def set_default_source(self, name: str) -> None:
        self.source_manager.set_default_source(name)
        self._store_sources()

    def enable_source(self, name: str) -> None:
        self.source_manager.enable_source(name)
        self._store_sources()

    def disable_source(self, name: str) -> None:
        self.source_manager.disable_source(name)
        self._store_sources()

    def save_config(self) -> None:
        """Write the configuration back, keeping data_dir relative to the root when possible."""
        config = self.config.model_copy(deep=True)
        data_dir = Path(config.registry.data_dir)
        try:
            config.registry.data_dir = str(data_dir.relative_to(self.root_dir))
        except ValueError:
            pass
        save_config(config, self.config_path)
