"""
Git client for index repositories.

Thin async wrapper over the git binary. Every git invocation made by the
index manager goes through here, and command failures come back as
GitResult values instead of exceptions.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class GitResult:
    """Result of a git command."""
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


class GitClient:
    """
    Abstraction over git commands.

    Example:
        client = GitClient()
        result = await client.pull(Path("data/index"))
        if not result.success:
            print(result.stderr)
    """

    def __init__(self, timeout: float = 300.0, executable: str = "git"):
        """
        Initialize GitClient.

        Args:
            timeout: Command timeout in seconds (default: 300)
            executable: git binary to invoke
        """
        self.timeout = timeout
        self.executable = executable

    async def _run(self, args: List[str], cwd: Optional[Path] = None) -> GitResult:
        """
        Run a git command.

        Args:
            args: Arguments passed to git
            cwd: Working directory

        Returns:
            GitResult with captured output. Failures to start the process or
            timeouts are reported as unsuccessful results.
        """
        logger.debug(f"git {' '.join(args)} (cwd={cwd})")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return GitResult(success=False, stderr=str(e), exit_code=127)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return GitResult(success=False, stderr=f"git {args[0]} timed out", exit_code=124)

        return GitResult(
            success=proc.returncode == 0,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
            exit_code=proc.returncode if proc.returncode is not None else 1,
        )

    async def is_repo(self, path: Path) -> bool:
        if not path.is_dir():
            return False
        result = await self._run(["rev-parse", "--git-dir"], cwd=path)
        return result.success

    async def init(self, path: Path, branch: str = "main") -> GitResult:
        path.mkdir(parents=True, exist_ok=True)
        return await self._run(["init", "-b", branch], cwd=path)

    async def configure_user(self, path: Path, name: str, email: str) -> GitResult:
        result = await self._run(["config", "user.name", name], cwd=path)
        if not result.success:
            return result
        return await self._run(["config", "user.email", email], cwd=path)

    async def clone(self, url: str, path: Path, branch: Optional[str] = None) -> GitResult:
        args = ["clone"]
        if branch:
            args += ["--branch", branch]
        args += [url, str(path)]
        return await self._run(args)

    async def pull(
        self,
        path: Path,
        remote: Optional[str] = None,
        branch: Optional[str] = None,
    ) -> GitResult:
        args = ["pull", "--ff-only"]
        if remote:
            args.append(remote)
            if branch:
                args.append(branch)
        return await self._run(args, cwd=path)

    async def has_changes(self, path: Path) -> bool:
        result = await self._run(["status", "--porcelain"], cwd=path)
        return result.success and bool(result.stdout)

    async def add(self, path: Path, files: List[str]) -> GitResult:
        return await self._run(["add", *files], cwd=path)

    async def commit(self, path: Path, message: str) -> GitResult:
        return await self._run(["commit", "-m", message], cwd=path)

    async def update_server_info(self, path: Path) -> GitResult:
        """Refresh info/refs and objects/info/packs for dumb HTTP clients."""
        return await self._run(["update-server-info"], cwd=path)

    async def has_remote(self, path: Path, name: str) -> bool:
        result = await self._run(["remote", "get-url", name], cwd=path)
        return result.success

    async def add_remote(self, path: Path, name: str, url: str) -> GitResult:
        return await self._run(["remote", "add", name, url], cwd=path)

    async def set_remote_url(self, path: Path, name: str, url: str) -> GitResult:
        return await self._run(["remote", "set-url", name, url], cwd=path)

    async def push(
        self,
        path: Path,
        remote: str = "origin",
        branch: str = "main",
        set_upstream: bool = False,
    ) -> GitResult:
        args = ["push"]
        if set_upstream:
            args.append("-u")
        args += [remote, branch]
        return await self._run(args, cwd=path)
