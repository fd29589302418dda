"""
Package registry mirror.

This package is responsible for:
* Normalizing the configured upstream sources into a prioritized table.
* Keeping a local copy of each source's git-backed package index.
* Resolving glob patterns into the set of packages (and dependencies) to mirror.
* Downloading and verifying package archives into a disk-backed cache.
* Serving cached metadata and archives over HTTP.
"""

__version__ = "0.1.0"
