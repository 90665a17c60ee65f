"""Path matching and connection helpers shared by the enforcement layers."""

from __future__ import annotations

from typing import Iterable, Mapping, TypeVar
from urllib.parse import urlparse

from starlette.requests import HTTPConnection

V = TypeVar("V")


def normalize_path(path: str) -> str:
    """Normalize a URL path for comparison.

    Strips query strings and fragments, removes trailing slashes (preserving
    the root ``/``), and collapses consecutive slashes.
    """
    path = urlparse(path).path or "/"
    while "//" in path:
        path = path.replace("//", "/")
    if path != "/":
        path = path.rstrip("/")
    return path


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    """Exact match after normalizing both sides; no wildcards."""
    normalized = normalize_path(path)
    return any(normalized == normalize_path(p) for p in patterns)


def longest_prefix(path: str, table: Mapping[str, V]) -> tuple[str, V] | None:
    """Return the most specific ``(prefix, value)`` whose prefix covers *path*.

    Matching is segment-aware: ``/api`` covers ``/api`` and ``/api/x`` but
    not ``/apix``.
    """
    normalized = normalize_path(path)
    best: tuple[str, V] | None = None
    for prefix, value in table.items():
        p = normalize_path(prefix)
        covered = p == "/" or normalized == p or normalized.startswith(p + "/")
        if covered and (best is None or len(p) > len(normalize_path(best[0]))):
            best = (prefix, value)
    return best


def client_ip(conn: HTTPConnection, trust_forwarded_for: bool = False) -> str:
    """Client address for rate limiting.

    ``X-Forwarded-For`` is client-controlled unless a trusted proxy sets it,
    so it is read only when *trust_forwarded_for* is enabled.
    """
    if trust_forwarded_for:
        forwarded = conn.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if conn.client:
        return conn.client.host
    return "unknown"


def bearer_token(conn: HTTPConnection) -> str | None:
    """Token from an ``Authorization: Bearer`` header, or ``None``."""
    auth_header = conn.headers.get("authorization", "")
    if auth_header[:7].lower() != "bearer " or len(auth_header) <= 7:
        return None
    return auth_header[7:].strip() or None
