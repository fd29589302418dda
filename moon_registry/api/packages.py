from __future__ import annotations

from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse

from moon_registry.core.dependencies import get_registry
from moon_registry.domain.errors import IndexReadError
from moon_registry.domain.models import PackageMetadata, RegistryStats
from moon_registry.services.registry import Registry

logger = logging.getLogger(__name__)
router = APIRouter()

# ---------------------------------------------------------------------------
# Listing and statistics
# ---------------------------------------------------------------------------

@router.get("/api/packages")
async def list_packages(
    pattern: Optional[str] = Query(default=None, description="Glob over package ids, e.g. 'moonbitlang/*'"),
    registry: Registry = Depends(get_registry),
) -> List[str]:
    if pattern:
        return await registry.list_packages_matching(pattern)
    return await registry.list_packages()


@router.get("/api/stats")
async def get_stats(registry: Registry = Depends(get_registry)) -> RegistryStats:
    return await registry.get_stats()


# ---------------------------------------------------------------------------
# Package archives and metadata
# ---------------------------------------------------------------------------

@router.get("/user/{username}/{name}/{version}.zip")
async def download_package(
    username: str,
    name: str,
    version: str,
    registry: Registry = Depends(get_registry),
) -> FileResponse:
    """
    Serve a package archive, fetching it from upstream first if it is not cached.
    """
    path = await registry.fetch_package_file(username, name, version)
    if path is None or not path.is_file():
        raise HTTPException(status_code=404, detail="Package not found")

    return FileResponse(
        path,
        media_type="application/zip",
        filename=f"{version}.zip",
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )


@router.get("/user/{username}/{name}")
async def get_package(
    username: str,
    name: str,
    registry: Registry = Depends(get_registry),
) -> PackageMetadata:
    try:
        metadata = await registry.get_package(username, name)
    except IndexReadError as e:
        logger.error(str(e))
        raise HTTPException(status_code=500, detail="Package index is unreadable")

    if metadata is None:
        raise HTTPException(status_code=404, detail="Package not found")
    return metadata
