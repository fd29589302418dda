"""
Package archive storage and caching.

Archives are stored by identity, not by content hash:
``<data_dir>/packages/<owner>/<name>/<version>.zip``. A cached archive is
valid if it exists and, when a checksum is known, its SHA256 matches.

This service handles:
- Locating cached archives
- Downloading archives from a source, with checksum verification
- Falling back across enabled sources in priority order
- Cache inventory and manual eviction
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

import aiofiles
import httpx

from moon_registry.domain.errors import (
    ChecksumMismatchError,
    PackageNotFoundError,
    TransportError,
)
from moon_registry.domain.models import (
    PackageVersionId,
    RegistryConfig,
    format_package_version_id,
    is_safe_path_component,
)
from moon_registry.services.source_manager import SourceManager

logger = logging.getLogger(__name__)

PACKAGES_DIR_NAME = "packages"
ARCHIVE_SUFFIX = ".zip"
DOWNLOAD_TIMEOUT = 60.0


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_checksum(path: Path, expected: str) -> bool:
    return sha256_file(path).lower() == expected.lower()


class _PathLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class PackageStore:
    """
    Disk-backed archive cache with verified downloads.

    An ``httpx`` transport may be injected (e.g. ``httpx.MockTransport``) to
    control how archives are fetched.
    """

    def __init__(
        self,
        config: RegistryConfig,
        source_manager: SourceManager,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: logging.Logger = logger,
    ):
        self.config = config
        self.sources = source_manager
        self.transport = transport
        self.log = logger
        self.packages_dir = Path(config.registry.data_dir) / PACKAGES_DIR_NAME
        self._locks: Dict[Path, _PathLock] = {}

    @property
    def path(self) -> Path:
        return self.packages_dir

    async def init(self) -> None:
        self.packages_dir.mkdir(parents=True, exist_ok=True)

    # ========================================================================
    # Lookup
    # ========================================================================

    def get_package_path(self, username: str, name: str, version: str) -> Path:
        """
        Cache location of one archive.

        Raises PackageNotFoundError when a component would not stay a single
        path segment under the packages directory (empty, ``.``, ``..`` or
        containing a separator).
        """
        for component in (username, name, version):
            if not is_safe_path_component(component):
                raise PackageNotFoundError(
                    f"Invalid package path {format_package_version_id(username, name, version)!r}"
                )
        return self.packages_dir / username / name / f"{version}{ARCHIVE_SUFFIX}"

    def has_package(self, username: str, name: str, version: str) -> bool:
        return self.get_package_file(username, name, version) is not None

    def get_package_file(self, username: str, name: str, version: str) -> Optional[Path]:
        try:
            path = self.get_package_path(username, name, version)
        except PackageNotFoundError:
            return None
        return path if path.is_file() else None

    @asynccontextmanager
    async def _locked(self, path: Path) -> AsyncIterator[None]:
        """Hold the download lock of *path*; the entry is dropped once nobody uses it."""
        entry = self._locks.get(path)
        if entry is None:
            entry = self._locks[path] = _PathLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[path]

    def _check_cached(self, path: Path, package: str, expected_checksum: Optional[str]) -> bool:
        """
        True if a usable archive is already at *path*.

        A cached archive whose checksum does not match is deleted so that it
        gets downloaded again.
        """
        if not path.is_file():
            return False
        if not expected_checksum:
            return True
        if verify_checksum(path, expected_checksum):
            self.log.debug(f"Package {package} already cached")
            return True
        self.log.warning(f"Checksum mismatch for cached {package}, re-downloading")
        path.unlink(missing_ok=True)
        return False

    # ========================================================================
    # Downloading
    # ========================================================================

    async def download_package(
        self,
        username: str,
        name: str,
        version: str,
        expected_checksum: Optional[str] = None,
        source_name: Optional[str] = None,
    ) -> Path:
        """
        Make sure an archive is cached, downloading it from a source if needed.

        Args:
            username: Package owner
            name: Package name
            version: Package version
            expected_checksum: SHA256 from the index; verified before the file is kept
            source_name: Source to fetch from (default source when omitted)

        Returns:
            Path to the cached archive
        """
        package_path = self.get_package_path(username, name, version)
        package = format_package_version_id(username, name, version)

        async with self._locked(package_path):
            if self._check_cached(package_path, package, expected_checksum):
                return package_path

            source = self.sources.require_source(source_name)
            url = self.sources.build_package_url(source, username, name, version)
            headers = self.sources.build_auth_headers(source)

            self.log.info(f"Downloading {package} from {source.name}")
            await self._fetch_to_path(url, headers, package_path, package, expected_checksum)

        self.log.debug(f"Downloaded {package}")
        return package_path

    async def _fetch_to_path(
        self,
        url: str,
        headers: Dict[str, str],
        target_path: Path,
        package: str,
        expected_checksum: Optional[str],
    ) -> None:
        """
        Fetch *url* into *target_path*.

        The body is written to a temporary file next to the target, verified,
        and only then renamed into place, so an interrupted or corrupt download
        never leaves a file at the target path.
        """
        try:
            async with httpx.AsyncClient(
                transport=self.transport,
                follow_redirects=True,
                timeout=DOWNLOAD_TIMEOUT,
            ) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(url, str(e)) from e

        if not response.is_success:
            raise TransportError(
                url,
                f"{response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        data = response.content
        target_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{target_path.name}.", suffix=".tmp", dir=target_path.parent
        )
        os.close(fd)
        tmp_path = Path(tmp_name)

        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)

            if expected_checksum:
                actual = hashlib.sha256(data).hexdigest()
                if actual.lower() != expected_checksum.lower():
                    self.log.error(f"Checksum mismatch for {package} from {url}")
                    raise ChecksumMismatchError(package, expected_checksum, actual)

            tmp_path.replace(target_path)
        finally:
            tmp_path.unlink(missing_ok=True)

    async def download_package_with_fallback(
        self,
        username: str,
        name: str,
        version: str,
        expected_checksum: Optional[str] = None,
    ) -> Path:
        """
        Download an archive trying every enabled source in priority order.

        The first source that succeeds wins. Individual failures are logged
        and skipped; if every source fails, PackageNotFoundError is raised.
        """
        package_path = self.get_package_path(username, name, version)
        package = format_package_version_id(username, name, version)

        async with self._locked(package_path):
            if self._check_cached(package_path, package, expected_checksum):
                return package_path

        sources = self.sources.list_enabled_sources()
        for source in sources:
            try:
                return await self.download_package(
                    username, name, version, expected_checksum, source.name
                )
            except Exception as e:
                self.log.warning(f"Failed to download {package} from {source.name}: {e}")

        raise PackageNotFoundError(f"Package {package} not found in any source")

    # ========================================================================
    # Inventory
    # ========================================================================

    async def list_cached(self) -> List[PackageVersionId]:
        """List every cached archive as (owner, name, version)."""
        packages: List[PackageVersionId] = []
        if not self.packages_dir.is_dir():
            return packages

        for user_dir in sorted(self.packages_dir.iterdir()):
            if not user_dir.is_dir():
                continue
            for pkg_dir in sorted(user_dir.iterdir()):
                if not pkg_dir.is_dir():
                    continue
                for archive in sorted(pkg_dir.iterdir()):
                    if archive.is_file() and archive.name.endswith(ARCHIVE_SUFFIX) and not archive.name.startswith("."):
                        packages.append(
                            PackageVersionId(
                                username=user_dir.name,
                                name=pkg_dir.name,
                                version=archive.name[: -len(ARCHIVE_SUFFIX)],
                            )
                        )
        return packages

    async def get_cache_size(self) -> int:
        """Total size in bytes of all cached archives."""
        if not self.packages_dir.is_dir():
            return 0
        return sum(
            p.stat().st_size
            for p in self.packages_dir.rglob(f"*{ARCHIVE_SUFFIX}")
            if p.is_file()
        )

    async def remove_package(self, username: str, name: str, version: str) -> bool:
        path = self.get_package_path(username, name, version)
        if not path.exists():
            return False
        path.unlink()
        self.log.debug(f"Removed {format_package_version_id(username, name, version)}")
        return True

    async def clear_cache(self) -> None:
        if self.packages_dir.exists():
            shutil.rmtree(self.packages_dir)
        self.packages_dir.mkdir(parents=True, exist_ok=True)
        self.log.info("Cleared package cache")
