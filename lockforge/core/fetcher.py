"""Dependency fetchers and origin inference.

A fetcher turns an origin URL into bytes and nothing more; it never looks at
digests. Verification is the resolver's job, so swapping the fetcher cannot
weaken the integrity gate.

Priority for an entry's origin:
1. the explicit ``origin`` override on the lock entry,
2. the registry download URL for ``registry+`` / ``sparse+`` sources,
3. the GitHub archive tarball for ``git+https://github.com/...#<rev>`` sources.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import urlsplit

import httpx

from lockforge.errors import MalformedLockEntry
from lockforge.models.lockfile import LockEntry

logger = logging.getLogger(__name__)


class OriginError(OSError):
    """The origin could not deliver the requested bytes."""


@runtime_checkable
class Fetcher(Protocol):
    """Protocol for fetch backends.

    Any object with a ``fetch(url) -> bytes`` method satisfies this
    protocol. Implementations raise ``OriginError`` on failure.
    """

    def fetch(self, url: str) -> bytes:
        ...


class HttpFetcher:
    """Fetches ``http(s)://`` origins with httpx and ``file://`` origins from disk.

    Parameters
    ----------
    timeout:
        Per-request timeout in seconds.
    client:
        Optional pre-configured ``httpx.Client`` (tests pass one built on
        ``httpx.MockTransport``).
    """

    def __init__(
        self, timeout: float = 60.0, client: httpx.Client | None = None
    ) -> None:
        self._client = client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": "lockforge"},
        )

    def fetch(self, url: str) -> bytes:
        parts = urlsplit(url)
        if parts.scheme == "file":
            try:
                return Path(parts.path).read_bytes()
            except OSError as exc:
                raise OriginError(str(exc)) from exc

        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise OriginError(str(exc)) from exc
        return response.content

    def close(self) -> None:
        self._client.close()


def infer_origin(entry: LockEntry, registry_url: str) -> str:
    """Return the URL the bytes for *entry* are fetched from."""
    if entry.origin:
        return entry.origin

    source = entry.source
    if not source or source.startswith(("registry+", "sparse+")):
        base = registry_url.rstrip("/")
        return f"{base}/{entry.name}/{entry.name}-{entry.version}.crate"

    if entry.is_git:
        return _github_archive_url(entry)

    raise MalformedLockEntry(
        f"Cannot infer an origin for {entry.identifier} from source {source!r}; "
        "declare one under [origins]"
    )


def _github_archive_url(entry: LockEntry) -> str:
    """``git+https://github.com/o/r?rev=x#<commit>`` -> archive tarball URL."""
    url = entry.source.removeprefix("git+")
    parts = urlsplit(url)
    commit = parts.fragment
    if parts.netloc != "github.com" or not commit:
        raise MalformedLockEntry(
            f"Git dependency {entry.identifier} is not a pinned GitHub commit; "
            "declare its origin under [origins]"
        )
    repo = parts.path.removesuffix(".git").rstrip("/")
    return f"https://github.com{repo}/archive/{commit}.tar.gz"
