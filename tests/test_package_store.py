"""Tests for PackageStore."""

import asyncio
import logging

import pytest

from conftest import ArchiveServer, sha256
from moon_registry.domain.errors import (
    ChecksumMismatchError,
    ConfigurationError,
    PackageNotFoundError,
    TransportError,
)
from moon_registry.services.package_store import PackageStore
from moon_registry.services.source_manager import SourceManager

ARCHIVE = b"PK\x03\x04 package archive bytes"
INTERNAL_URL = "https://internal.example/user/alice/lib/1.0.0.zip"
PUBLIC_URL = "https://public.example/user/alice/lib/1.0.0.zip"
UPSTREAM_URL = "https://upstream.example/user/alice/lib/1.0.0.zip"


def make_store(config, server):
    return PackageStore(config, SourceManager(config), transport=server.transport)


def seed_cache(store, data: bytes):
    path = store.get_package_path("alice", "lib", "1.0.0")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


class TestLookup:

    def test_deterministic_path(self, legacy_config, data_dir):
        store = make_store(legacy_config, ArchiveServer())
        assert store.get_package_path("alice", "lib", "1.0.0") == data_dir / "packages" / "alice" / "lib" / "1.0.0.zip"

    def test_has_package_and_get_file(self, legacy_config):
        store = make_store(legacy_config, ArchiveServer())
        assert not store.has_package("alice", "lib", "1.0.0")
        assert store.get_package_file("alice", "lib", "1.0.0") is None

        path = seed_cache(store, ARCHIVE)
        assert store.has_package("alice", "lib", "1.0.0")
        assert store.get_package_file("alice", "lib", "1.0.0") == path

    @pytest.mark.parametrize(
        "username, name, version",
        [
            ("..", "..", "escape"),
            ("alice", "..", "1.0.0"),
            ("alice", "lib", "../../../escape"),
            ("alice/..", "lib", "1.0.0"),
            ("alice", "lib\\..", "1.0.0"),
            ("", "lib", "1.0.0"),
            (".", "lib", "1.0.0"),
        ],
    )
    def test_rejects_components_that_leave_the_cache(self, legacy_config, username, name, version):
        store = make_store(legacy_config, ArchiveServer())
        with pytest.raises(PackageNotFoundError, match="Invalid package path"):
            store.get_package_path(username, name, version)
        assert not store.has_package(username, name, version)
        assert store.get_package_file(username, name, version) is None


class TestDownload:

    def test_downloads_and_verifies(self, legacy_config):
        server = ArchiveServer({UPSTREAM_URL: ARCHIVE})
        store = make_store(legacy_config, server)

        path = asyncio.run(store.download_package("alice", "lib", "1.0.0", sha256(ARCHIVE)))
        assert path.read_bytes() == ARCHIVE
        assert server.urls() == [UPSTREAM_URL]

    def test_checksum_comparison_ignores_case(self, legacy_config):
        server = ArchiveServer({UPSTREAM_URL: ARCHIVE})
        store = make_store(legacy_config, server)
        path = asyncio.run(store.download_package("alice", "lib", "1.0.0", sha256(ARCHIVE).upper()))
        assert path.is_file()

    def test_valid_cached_file_is_not_downloaded(self, legacy_config):
        server = ArchiveServer({UPSTREAM_URL: b"other"})
        store = make_store(legacy_config, server)
        seed_cache(store, ARCHIVE)

        path = asyncio.run(store.download_package("alice", "lib", "1.0.0", sha256(ARCHIVE)))
        assert path.read_bytes() == ARCHIVE
        assert server.requests == []

    def test_cached_file_trusted_without_checksum(self, legacy_config):
        server = ArchiveServer({UPSTREAM_URL: ARCHIVE})
        store = make_store(legacy_config, server)
        seed_cache(store, b"whatever is there")

        path = asyncio.run(store.download_package("alice", "lib", "1.0.0"))
        assert path.read_bytes() == b"whatever is there"
        assert server.requests == []

    def test_corrupt_cache_is_replaced_once(self, legacy_config):
        server = ArchiveServer({UPSTREAM_URL: ARCHIVE})
        store = make_store(legacy_config, server)
        seed_cache(store, b"corrupted")

        path = asyncio.run(store.download_package("alice", "lib", "1.0.0", sha256(ARCHIVE)))
        assert path.read_bytes() == ARCHIVE
        assert server.urls() == [UPSTREAM_URL]

    def test_second_mismatch_leaves_nothing_behind(self, legacy_config):
        server = ArchiveServer({UPSTREAM_URL: b"also wrong"})
        store = make_store(legacy_config, server)
        path = seed_cache(store, b"corrupted")

        with pytest.raises(ChecksumMismatchError):
            asyncio.run(store.download_package("alice", "lib", "1.0.0", sha256(ARCHIVE)))

        assert not path.exists()
        assert list(path.parent.iterdir()) == []
        assert server.urls() == [UPSTREAM_URL]

    def test_http_error_writes_nothing(self, legacy_config):
        server = ArchiveServer()
        store = make_store(legacy_config, server)

        with pytest.raises(TransportError) as exc_info:
            asyncio.run(store.download_package("alice", "lib", "1.0.0"))

        assert exc_info.value.status_code == 404
        assert not store.has_package("alice", "lib", "1.0.0")

    def test_network_error_is_transport_error(self, legacy_config):
        server = ArchiveServer(unreachable=("upstream.example",))
        store = make_store(legacy_config, server)

        with pytest.raises(TransportError):
            asyncio.run(store.download_package("alice", "lib", "1.0.0"))

    def test_named_source_with_auth(self, multi_source_config, monkeypatch):
        monkeypatch.setenv("INTERNAL_TOKEN", "tok-123")
        server = ArchiveServer({INTERNAL_URL: ARCHIVE, PUBLIC_URL: ARCHIVE})
        store = make_store(multi_source_config, server)

        asyncio.run(store.download_package("alice", "lib", "1.0.0", source_name="internal"))
        assert server.requests[0].headers["Authorization"] == "Bearer tok-123"

    def test_public_source_sends_no_auth(self, multi_source_config):
        server = ArchiveServer({PUBLIC_URL: ARCHIVE})
        store = make_store(multi_source_config, server)

        asyncio.run(store.download_package("alice", "lib", "1.0.0", source_name="public"))
        assert "Authorization" not in server.requests[0].headers

    def test_unknown_source(self, multi_source_config):
        store = make_store(multi_source_config, ArchiveServer())
        with pytest.raises(ConfigurationError):
            asyncio.run(store.download_package("alice", "lib", "1.0.0", source_name="nope"))

    def test_concurrent_downloads_of_same_artifact(self, legacy_config):
        server = ArchiveServer({UPSTREAM_URL: ARCHIVE})
        store = make_store(legacy_config, server)

        async def both():
            return await asyncio.gather(
                store.download_package("alice", "lib", "1.0.0", sha256(ARCHIVE)),
                store.download_package("alice", "lib", "1.0.0", sha256(ARCHIVE)),
            )

        first, second = asyncio.run(both())
        assert first == second
        assert server.urls() == [UPSTREAM_URL]
        assert store._locks == {}

    def test_download_outside_cache_is_refused(self, legacy_config, tmp_path):
        server = ArchiveServer({"https://upstream.example/user/../../escape.zip": ARCHIVE})
        store = make_store(legacy_config, server)

        with pytest.raises(PackageNotFoundError):
            asyncio.run(store.download_package("..", "..", "escape"))
        with pytest.raises(PackageNotFoundError):
            asyncio.run(store.download_package_with_fallback("..", "..", "escape"))
        assert server.requests == []
        assert not list(tmp_path.rglob("escape*"))
        assert store._locks == {}


class TestFallback:

    def test_first_source_wins(self, multi_source_config):
        server = ArchiveServer({INTERNAL_URL: ARCHIVE}, unreachable=("public.example",))
        store = make_store(multi_source_config, server)

        path = asyncio.run(store.download_package_with_fallback("alice", "lib", "1.0.0", sha256(ARCHIVE)))
        assert path.read_bytes() == ARCHIVE
        assert server.urls() == [INTERNAL_URL]

    def test_falls_back_to_next_source(self, multi_source_config):
        server = ArchiveServer({PUBLIC_URL: ARCHIVE})
        store = make_store(multi_source_config, server)

        path = asyncio.run(store.download_package_with_fallback("alice", "lib", "1.0.0", sha256(ARCHIVE)))
        assert path.read_bytes() == ARCHIVE
        assert server.urls() == [INTERNAL_URL, PUBLIC_URL]

    def test_source_failures_are_logged_as_warnings(self, multi_source_config, caplog):
        server = ArchiveServer({PUBLIC_URL: ARCHIVE}, unreachable=("internal.example",))
        store = make_store(multi_source_config, server)

        with caplog.at_level(logging.WARNING):
            asyncio.run(store.download_package_with_fallback("alice", "lib", "1.0.0", sha256(ARCHIVE)))

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "Failed to download alice/lib@1.0.0 from internal" in warnings[0].getMessage()
        assert store._locks == {}

    def test_checksum_failure_moves_on(self, multi_source_config):
        server = ArchiveServer({INTERNAL_URL: b"tampered", PUBLIC_URL: ARCHIVE})
        store = make_store(multi_source_config, server)

        path = asyncio.run(store.download_package_with_fallback("alice", "lib", "1.0.0", sha256(ARCHIVE)))
        assert path.read_bytes() == ARCHIVE

    def test_all_sources_fail(self, multi_source_config):
        server = ArchiveServer(unreachable=("public.example",))
        store = make_store(multi_source_config, server)

        with pytest.raises(PackageNotFoundError, match="not found in any source"):
            asyncio.run(store.download_package_with_fallback("alice", "lib", "1.0.0"))
        assert not store.has_package("alice", "lib", "1.0.0")

    def test_cache_hit_skips_sources(self, multi_source_config):
        server = ArchiveServer()
        store = make_store(multi_source_config, server)
        seed_cache(store, ARCHIVE)

        asyncio.run(store.download_package_with_fallback("alice", "lib", "1.0.0", sha256(ARCHIVE)))
        assert server.requests == []

    def test_disabled_sources_are_skipped(self, multi_source_config):
        sources = SourceManager(multi_source_config)
        sources.disable_source("internal")
        server = ArchiveServer({INTERNAL_URL: ARCHIVE, PUBLIC_URL: ARCHIVE})
        store = PackageStore(multi_source_config, sources, transport=server.transport)

        asyncio.run(store.download_package_with_fallback("alice", "lib", "1.0.0"))
        assert server.urls() == [PUBLIC_URL]


class TestInventory:

    def test_list_and_size(self, legacy_config):
        store = make_store(legacy_config, ArchiveServer())
        for owner, name, v, data in [
            ("alice", "lib", "1.0.0", b"12345"),
            ("alice", "lib", "1.1.0", b"123"),
            ("bob", "util", "0.1.0", b"1"),
        ]:
            path = store.get_package_path(owner, name, v)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        (store.path / "alice" / "lib" / "notes.txt").write_text("ignored")

        cached = asyncio.run(store.list_cached())
        assert [str(c) for c in cached] == ["alice/lib@1.0.0", "alice/lib@1.1.0", "bob/util@0.1.0"]
        assert asyncio.run(store.get_cache_size()) == 9

    def test_empty_cache(self, legacy_config):
        store = make_store(legacy_config, ArchiveServer())
        assert asyncio.run(store.list_cached()) == []
        assert asyncio.run(store.get_cache_size()) == 0

    def test_remove_and_clear(self, legacy_config):
        store = make_store(legacy_config, ArchiveServer())
        seed_cache(store, ARCHIVE)

        assert asyncio.run(store.remove_package("alice", "lib", "1.0.0")) is True
        assert asyncio.run(store.remove_package("alice", "lib", "1.0.0")) is False

        seed_cache(store, ARCHIVE)
        asyncio.run(store.clear_cache())
        assert store.path.is_dir()
        assert asyncio.run(store.list_cached()) == []
