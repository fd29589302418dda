import re
from typing import Iterable, List


def match_glob(value: str, pattern: str) -> bool:
    """
    Match a package id against a glob pattern.

    ``*`` matches any run of characters (including ``/`` and the empty
    string), ``?`` matches exactly one character, everything else is literal.
    The match is anchored to the whole id.
    """
    regex = "^" + re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".") + "$"
    return re.search(regex, value, flags=re.DOTALL) is not None


def matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(match_glob(value, p) for p in patterns)


_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _version_part(part: str) -> int:
    # Leading integer of the component, 0 when there is none ("beta" -> 0, "3rc1" -> 3)
    m = _LEADING_INT.match(part)
    return int(m.group(1)) if m else 0


def version_key(version: str) -> List[int]:
    """
    Sortable key for a dot-separated version string.

    Only numeric components are compared; pre-release and build suffixes are
    not given semver precedence.
    """
    return [_version_part(p) for p in version.split(".")]


def compare_versions(a: str, b: str) -> int:
    """Return <0, 0 or >0 as *a* is older than, equal to or newer than *b*."""
    parts_a = version_key(a)
    parts_b = version_key(b)
    for i in range(max(len(parts_a), len(parts_b))):
        num_a = parts_a[i] if i < len(parts_a) else 0
        num_b = parts_b[i] if i < len(parts_b) else 0
        if num_a != num_b:
            return num_a - num_b
    return 0
