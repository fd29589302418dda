"""Pytest fixtures for registry mirror tests."""

import hashlib
import json
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest

from moon_registry.domain.models import RegistryConfig
from moon_registry.services.git_client import GitResult


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def write_index(index_dir: Path, packages: Dict[str, List[dict]]) -> None:
    """Write ``{"owner/name": [version entries]}`` as JSONL index files."""
    for package_id, versions in packages.items():
        owner, name = package_id.split("/")
        owner_dir = index_dir / owner
        owner_dir.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(v) for v in versions]
        (owner_dir / name).write_text("\n".join(lines) + "\n", encoding="utf-8")


def version(v: str, deps: Optional[Dict[str, str]] = None, checksum: str = "0" * 64, yanked: Optional[bool] = None) -> dict:
    entry = {"version": v, "checksum": checksum, "deps": deps or {}}
    if yanked is not None:
        entry["yanked"] = yanked
    return entry


class FakeGitClient:
    """
    Stand-in for GitClient.

    ``remotes`` maps a clone URL to the index contents (as accepted by
    write_index) that a clone of that URL should produce.
    """

    def __init__(self, remotes: Optional[Dict[str, Dict[str, List[dict]]]] = None, pull_succeeds: bool = True):
        self.remotes = remotes or {}
        self.pull_succeeds = pull_succeeds
        self.dirty = False
        self.configured_remotes: Dict[str, str] = {}
        self.calls: List[tuple] = []

    async def is_repo(self, path: Path) -> bool:
        return (path / ".git").is_dir()

    async def clone(self, url: str, path: Path, branch: Optional[str] = None) -> GitResult:
        self.calls.append(("clone", url, path))
        if url not in self.remotes:
            return GitResult(success=False, stderr=f"repository '{url}' not found", exit_code=128)
        path.mkdir(parents=True, exist_ok=True)
        (path / ".git").mkdir()
        write_index(path, self.remotes[url])
        return GitResult(success=True)

    async def pull(self, path: Path, remote: Optional[str] = None, branch: Optional[str] = None) -> GitResult:
        self.calls.append(("pull", path))
        if self.pull_succeeds:
            return GitResult(success=True)
        return GitResult(success=False, stderr="fatal: unable to access remote", exit_code=1)

    async def init(self, path: Path, branch: str = "main") -> GitResult:
        self.calls.append(("init", path))
        (path / ".git").mkdir(parents=True, exist_ok=True)
        return GitResult(success=True)

    async def configure_user(self, path: Path, name: str, email: str) -> GitResult:
        return GitResult(success=True)

    async def has_changes(self, path: Path) -> bool:
        return self.dirty

    async def add(self, path: Path, files: List[str]) -> GitResult:
        self.calls.append(("add", path))
        return GitResult(success=True)

    async def commit(self, path: Path, message: str) -> GitResult:
        self.calls.append(("commit", message))
        self.dirty = False
        return GitResult(success=True)

    async def update_server_info(self, path: Path) -> GitResult:
        self.calls.append(("update_server_info", path))
        return GitResult(success=True)

    async def has_remote(self, path: Path, name: str) -> bool:
        return name in self.configured_remotes

    async def add_remote(self, path: Path, name: str, url: str) -> GitResult:
        self.calls.append(("add_remote", name, url))
        self.configured_remotes[name] = url
        return GitResult(success=True)

    async def set_remote_url(self, path: Path, name: str, url: str) -> GitResult:
        self.calls.append(("set_remote_url", name, url))
        self.configured_remotes[name] = url
        return GitResult(success=True)

    async def push(self, path: Path, remote: str = "origin", branch: Optional[str] = None, set_upstream: bool = False) -> GitResult:
        self.calls.append(("push", remote, branch))
        return GitResult(success=True)


class ArchiveServer:
    """
    Fake HTTP upstream for httpx.MockTransport.

    Maps full URLs to response bodies; unknown URLs get a 404. Hosts listed
    in ``unreachable`` raise a connection error.
    """

    def __init__(self, files: Optional[Dict[str, bytes]] = None, unreachable: tuple = ()):
        self.files = dict(files or {})
        self.unreachable = set(unreachable)
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        body = self.files.get(str(request.url))
        if body is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def legacy_config(data_dir: Path) -> RegistryConfig:
    """Configuration with only the deprecated upstream block."""
    return RegistryConfig.model_validate(
        {
            "registry": {"name": "test", "data_dir": str(data_dir)},
            "upstream": {
                "enabled": True,
                "url": "https://upstream.example",
                "index_url": "https://upstream.example/git/index",
            },
        }
    )


@pytest.fixture
def multi_source_config(data_dir: Path) -> RegistryConfig:
    """Two named git sources: 'internal' (priority 10) and 'public' (priority 100)."""
    return RegistryConfig.model_validate(
        {
            "registry": {"name": "test", "data_dir": str(data_dir)},
            "sources": [
                {
                    "name": "public",
                    "type": "mooncakes",
                    "url": "https://public.example",
                    "index_url": "https://public.example/git/index",
                    "priority": 100,
                },
                {
                    "name": "internal",
                    "url": "https://internal.example",
                    "index_url": "https://internal.example/git/index",
                    "priority": 10,
                    "auth": {"type": "bearer", "token": "${INTERNAL_TOKEN}"},
                },
            ],
            "default_source": "internal",
        }
    )
