"""Request path helpers used to pick rate-limit rules."""
from __future__ import annotations

from fnmatch import fnmatch

_STATIC_PREFIXES = ("/static/", "/_next/", "/favicon")


def normalize_path(path: str) -> str:
    """Ensure a path starts with a single ``/`` and has no trailing slash."""

    path = path.strip()
    if not path:
        return "/"
    if not path.startswith("/"):
        path = f"/{path}"
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def path_has_wildcard(pattern: str) -> bool:
    """Return ``True`` when the pattern contains wildcard tokens."""

    return any(symbol in pattern for symbol in ("*", "?", "[", "]"))


def path_matches(path: str, pattern: str) -> bool:
    """Check whether ``path`` satisfies ``pattern``.

    Wildcard patterns use ``fnmatch`` semantics; plain patterns match the path
    itself or anything below it.
    """

    path = normalize_path(path or "/")
    if path_has_wildcard(pattern):
        return fnmatch(path, pattern)
    pattern = normalize_path(pattern)
    if pattern == "/":
        return True
    return path == pattern or path.startswith(f"{pattern}/")


def is_static_asset(path: str) -> bool:
    """Static files and favicons are never rate limited."""

    if path.startswith(_STATIC_PREFIXES):
        return True
    last_segment = path.rsplit("/", 1)[-1]
    return "." in last_segment
