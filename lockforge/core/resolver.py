"""Dependency Lock Resolver: the integrity gate in front of the compiler.

``resolve()`` either returns a complete ``VerifiedDependencySet`` or raises;
there is no partial result. Per entry:

    cache lookup (re-verified) -> fetch from origin -> digest -> compare -> cache

Fetches run concurrently on a bounded thread pool. Ordering between entries
does not matter; the first failure cancels everything still pending.

Only ``OriginError`` is retried (with exponential backoff). A digest mismatch
is raised immediately and the bytes are discarded, never cached.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait

from lockforge.core.cache import ContentAddressedStore
from lockforge.core.fetcher import Fetcher, OriginError, infer_origin
from lockforge.core.hasher import digest_bytes
from lockforge.errors import FetchError, HashMismatch, MalformedLockEntry
from lockforge.models.lockfile import (
    LockEntry,
    LockFile,
    VerifiedDependency,
    VerifiedDependencySet,
)

logger = logging.getLogger(__name__)


class LockResolver:
    """Fetches and verifies every entry of a lock file.

    Parameters
    ----------
    cache:
        Content-addressed store verified bytes are written to.
    fetcher:
        Backend that turns an origin URL into bytes.
    registry_url:
        Base download URL for registry packages.
    retries:
        Extra attempts after a failed fetch before ``FetchError`` is raised.
    backoff_seconds:
        Initial backoff; doubles after every failed attempt.
    max_workers:
        Upper bound on concurrent fetches.
    sleep:
        Injectable sleep function (tests pass a no-op).
    """

    def __init__(
        self,
        cache: ContentAddressedStore,
        fetcher: Fetcher,
        *,
        registry_url: str = "https://static.crates.io/crates",
        retries: int = 3,
        backoff_seconds: float = 0.5,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cache = cache
        self._fetcher = fetcher
        self._registry_url = registry_url
        self._retries = max(0, retries)
        self._backoff = backoff_seconds
        self._max_workers = max(1, max_workers)
        self._sleep = sleep

    def resolve(self, lock_file: LockFile) -> VerifiedDependencySet:
        """Fetch and verify every entry; all-or-nothing."""
        # Origins are inferred up front so a malformed entry fails before
        # any network traffic.
        origins = {
            entry.identifier: infer_origin(entry, self._registry_url)
            for entry in lock_file.entries
        }
        for entry in lock_file.entries:
            if not entry.digest.value:
                raise MalformedLockEntry(f"{entry.identifier} has an empty digest")

        logger.info(
            "resolving %d dependencies (format v%d)",
            len(lock_file.entries),
            lock_file.format_version,
        )

        results: dict[str, VerifiedDependency] = {}
        if lock_file.entries:
            with ThreadPoolExecutor(
                max_workers=min(self._max_workers, len(lock_file.entries)),
                thread_name_prefix="lockforge-fetch",
            ) as pool:
                futures = {
                    pool.submit(
                        self._resolve_entry, entry, origins[entry.identifier]
                    ): entry.identifier
                    for entry in lock_file.entries
                }
                done, _ = wait(futures, return_when=FIRST_EXCEPTION)
                ordered = list(futures)
                failed_at = [
                    index for index, future in enumerate(ordered)
                    if future in done and future.exception() is not None
                ]
                if failed_at:
                    # Entries after the first known failure are cancelled;
                    # earlier ones finish so the error reported is always
                    # the first failure in lock order.
                    first = failed_at[0]
                    for other in ordered[first + 1:]:
                        other.cancel()
                    wait(ordered[:first])
                    for future in ordered[: first + 1]:
                        exc = future.exception()
                        if exc is not None:
                            raise exc
                for future in done:
                    results[futures[future]] = future.result()

        verified = VerifiedDependencySet(
            format_version=lock_file.format_version,
            dependencies=tuple(
                results[entry.identifier] for entry in lock_file.entries
            ),
        )
        logger.info("verified %d dependencies", len(verified))
        return verified

    # ------------------------------------------------------------------
    # Per-entry resolution
    # ------------------------------------------------------------------

    def _resolve_entry(self, entry: LockEntry, origin: str) -> VerifiedDependency:
        cached = self._cache.lookup(entry.digest)
        if cached is not None:
            logger.debug("cache hit for %s (%s)", entry.identifier, entry.digest)
            return VerifiedDependency(
                entry=entry,
                cache_path=cached.path,
                size_bytes=cached.size_bytes,
                origin=origin,
            )

        data = self._fetch_with_retry(entry, origin)

        actual = digest_bytes(data, entry.digest.algorithm)
        if actual != entry.digest:
            logger.error(
                "hash mismatch for %s from %s: expected %s, got %s",
                entry.identifier,
                origin,
                entry.digest.sri,
                actual.sri,
            )
            raise HashMismatch(entry.identifier, entry.digest.sri, actual.sri)

        blob = self._cache.store(
            data, algorithm=entry.digest.algorithm, name=entry.identifier
        )
        return VerifiedDependency(
            entry=entry,
            cache_path=blob.path,
            size_bytes=blob.size_bytes,
            origin=origin,
        )

    def _fetch_with_retry(self, entry: LockEntry, origin: str) -> bytes:
        delay = self._backoff
        attempts = self._retries + 1
        last_error: OriginError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self._fetcher.fetch(origin)
            except OriginError as exc:
                last_error = exc
                if attempt == attempts:
                    break
                logger.warning(
                    "fetch of %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    entry.identifier,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
                delay *= 2
        raise FetchError(entry.identifier, origin, str(last_error)) from last_error
