"""
Exception hierarchy for registry operations.

Resolution-time errors (ConfigurationError, IndexSyncError) abort a mirror
run. Per-package errors (PackageNotFoundError, ChecksumMismatchError,
TransportError, IndexReadError) are counted and logged so the rest of the
batch can proceed.
"""

from __future__ import annotations


class RegistryError(Exception):
    """Base class for all registry errors."""


class ConfigurationError(RegistryError):
    """Invalid configuration, or an unknown/disabled source was referenced."""


class PackageNotFoundError(RegistryError):
    """A package or version is absent from an index or from every source."""


class IndexReadError(RegistryError):
    """A package index file exists but could not be parsed."""

    def __init__(self, path, message: str):
        self.path = path
        super().__init__(f"Failed to read package index {path}: {message}")


class IndexSyncError(RegistryError):
    """The index repository of a source could not be cloned."""


class ChecksumMismatchError(RegistryError):
    """Downloaded bytes do not match the checksum recorded in the index."""

    def __init__(self, package: str, expected: str, actual: str):
        self.package = package
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum verification failed for {package}: expected {expected}, got {actual}"
        )


class TransportError(RegistryError):
    """Non-success HTTP status or network failure while fetching an archive."""

    def __init__(self, url: str, message: str, status_code: int | None = None):
        self.url = url
        self.status_code = status_code
        super().__init__(f"Failed to download {url}: {message}")
