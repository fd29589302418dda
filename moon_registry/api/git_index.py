"""
Git index endpoints (dumb HTTP protocol).

Serves the local index repository's ``.git`` directory as static files so
that ``git clone <server>/git/index`` works without a git daemon. Smart
HTTP (``?service=git-upload-pack``) is not supported.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse, PlainTextResponse

from moon_registry.core.dependencies import get_registry
from moon_registry.services.registry import Registry

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/git/index")

LOOSE_OBJECT_TYPE = "application/x-git-loose-object"
PACK_TYPE = "application/x-git-packed-objects"
PACK_INDEX_TYPE = "application/x-git-packed-objects-toc"


def _git_dir(registry: Registry) -> Path:
    return registry.index_manager.path / ".git"


def _serve(registry: Registry, relative: str, media_type: str) -> FileResponse:
    """Serve ``.git/<relative>``; 404 when missing or outside ``.git``."""
    git_dir = _git_dir(registry).resolve()
    path = (git_dir / relative).resolve()
    if git_dir not in path.parents or not path.is_file():
        logger.debug(f"Git file not found: {relative}")
        raise HTTPException(status_code=404, detail="Not found")

    return FileResponse(path, media_type=media_type, headers={"Cache-Control": "no-cache"})


@router.get("", response_class=PlainTextResponse)
@router.get("/", response_class=PlainTextResponse)
async def git_index_root() -> str:
    return "MoonBit Registry Git Index\n"


@router.get("/info/refs")
async def info_refs(service: Optional[str] = None, registry: Registry = Depends(get_registry)):
    if service:
        return PlainTextResponse("Smart HTTP not implemented", status_code=501)
    return _serve(registry, "info/refs", "text/plain")


@router.get("/HEAD")
async def head(registry: Registry = Depends(get_registry)) -> FileResponse:
    return _serve(registry, "HEAD", "text/plain")


@router.get("/objects/pack/{filename}")
async def pack_file(filename: str, registry: Registry = Depends(get_registry)) -> FileResponse:
    if filename.endswith(".pack"):
        return _serve(registry, f"objects/pack/{filename}", PACK_TYPE)
    if filename.endswith(".idx"):
        return _serve(registry, f"objects/pack/{filename}", PACK_INDEX_TYPE)
    raise HTTPException(status_code=404, detail="Not found")


@router.get("/objects/{path:path}")
async def loose_object(path: str, registry: Registry = Depends(get_registry)) -> FileResponse:
    return _serve(registry, f"objects/{path}", LOOSE_OBJECT_TYPE)


@router.get("/refs/{path:path}")
async def ref(path: str, registry: Registry = Depends(get_registry)) -> FileResponse:
    return _serve(registry, f"refs/{path}", "text/plain")


@router.get("/{path:path}")
async def other_git_file(path: str, registry: Registry = Depends(get_registry)) -> FileResponse:
    return _serve(registry, path, "application/octet-stream")
