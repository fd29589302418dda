"""
Dependency resolution for package mirroring.

Turns glob patterns and a resolution mode into the concrete set of packages
to mirror, following dependencies only where they match the requested
patterns.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Set

from moon_registry.domain.errors import IndexReadError
from moon_registry.domain.models import (
    DependencyResolution,
    MirrorOptions,
    PackageMetadata,
    PackageVersion,
    parse_package_id,
)
from moon_registry.domain.registry_utils import compare_versions, matches_any
from moon_registry.services.index_manager import IndexManager
from moon_registry.services.package_store import PackageStore

logger = logging.getLogger(__name__)


def get_latest_version(metadata: PackageMetadata) -> Optional[PackageVersion]:
    """Newest non-yanked version, by dot-separated numeric comparison."""
    latest: Optional[PackageVersion] = None
    for version in metadata.versions:
        if version.yanked:
            continue
        if latest is None or compare_versions(version.version, latest.version) > 0:
            latest = version
    return latest


class DependencyResolver:
    def __init__(
        self,
        index_manager: IndexManager,
        package_store: PackageStore,
        logger: logging.Logger = logger,
    ):
        self.index = index_manager
        self.store = package_store
        self.log = logger

    async def resolve(
        self,
        options: MirrorOptions,
        source_name: Optional[str] = None,
    ) -> DependencyResolution:
        """
        Resolve the packages to mirror.

        Args:
            options: Patterns and mode flags of the mirror request
            source_name: Index to resolve against (default source when omitted)

        Returns:
            DependencyResolution with the selected packages, the dependency
            edges that were not followed, and the packages already cached
        """
        result = DependencyResolution()

        for package_id in await self._match_patterns(options.patterns, options.full, source_name):
            result.packages.add(package_id)

        if not options.strict:
            await self._resolve_transitive_deps(result, options.patterns, source_name)

        for package_id in result.packages:
            if await self._is_package_cached(package_id, source_name):
                result.cached.add(package_id)

        return result

    async def _match_patterns(
        self,
        patterns: List[str],
        full: bool,
        source_name: Optional[str],
    ) -> List[str]:
        if full:
            return await self.index.list_packages_from_source(source_name)

        matched: Set[str] = set()
        for pattern in patterns:
            matched.update(await self.index.list_packages_matching_from_source(pattern, source_name))
        return sorted(matched)

    async def _read_metadata(self, package_id: str, source_name: Optional[str]) -> Optional[PackageMetadata]:
        pkg_id = parse_package_id(package_id)
        if pkg_id is None:
            return None
        try:
            return await self.index.get_package_from_source(pkg_id.username, pkg_id.name, source_name)
        except IndexReadError as e:
            self.log.debug(f"Skipping dependencies of {package_id}: {e}")
            return None

    async def _resolve_transitive_deps(
        self,
        result: DependencyResolution,
        original_patterns: List[str],
        source_name: Optional[str],
    ) -> None:
        to_process: List[str] = list(result.packages)
        processed: Set[str] = set()

        while to_process:
            package_id = to_process.pop(0)
            if package_id in processed:
                continue
            processed.add(package_id)

            metadata = await self._read_metadata(package_id, source_name)
            if metadata is None:
                continue

            latest = get_latest_version(metadata)
            if latest is None:
                continue

            for dep_name in latest.deps:
                if dep_name in result.packages:
                    continue

                if matches_any(dep_name, original_patterns):
                    result.packages.add(dep_name)
                    to_process.append(dep_name)
                else:
                    result.skipped.setdefault(dep_name, []).append(package_id)

    async def _is_package_cached(self, package_id: str, source_name: Optional[str]) -> bool:
        # Any cached version counts, not necessarily the one that is needed
        metadata = await self._read_metadata(package_id, source_name)
        if metadata is None:
            return False
        return any(
            self.store.has_package(metadata.username, metadata.name, v.version)
            for v in metadata.versions
        )

    async def log_skipped_warnings(
        self,
        result: DependencyResolution,
        quiet: bool = False,
        source_name: Optional[str] = None,
    ) -> None:
        """Warn once per dependency left out of the mirror and not already cached."""
        if quiet:
            return

        for dep, required_by in result.skipped.items():
            if dep in result.cached or await self._is_package_cached(dep, source_name):
                continue
            self.log.warning(
                f"Dependency '{dep}' required by [{', '.join(required_by)}] "
                f"is not included in mirror patterns and not cached"
            )
