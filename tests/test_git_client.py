"""Tests for GitClient against a real git binary when one is available."""

import asyncio
import shutil

import pytest

from moon_registry.services.git_client import GitClient

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def test_missing_executable_is_reported_not_raised(tmp_path):
    client = GitClient(executable="git-binary-that-does-not-exist")
    result = asyncio.run(client.pull(tmp_path))
    assert result.success is False
    assert result.exit_code == 127


@requires_git
def test_init_commit_and_clone(tmp_path):
    client = GitClient()
    origin = tmp_path / "origin"

    async def scenario():
        await client.init(origin)
        await client.configure_user(origin, "registry", "registry@local")
        assert await client.is_repo(origin)
        assert not await client.has_changes(origin)

        (origin / "alice").mkdir()
        (origin / "alice" / "lib").write_text('{"version": "0.1.0", "checksum": "x", "deps": {}}\n')
        assert await client.has_changes(origin)

        await client.add(origin, ["."])
        committed = await client.commit(origin, "Add alice/lib")
        assert committed.success, committed.stderr

        clone_path = tmp_path / "clone"
        cloned = await client.clone(str(origin), clone_path)
        assert cloned.success, cloned.stderr
        return clone_path

    clone_path = asyncio.run(scenario())
    assert (clone_path / "alice" / "lib").is_file()


@requires_git
def test_clone_of_missing_repository_fails(tmp_path):
    result = asyncio.run(GitClient().clone(str(tmp_path / "nowhere"), tmp_path / "target"))
    assert result.success is False
    assert result.exit_code != 0


@requires_git
def test_is_repo_false_for_plain_directory(tmp_path):
    assert asyncio.run(GitClient().is_repo(tmp_path)) is False
