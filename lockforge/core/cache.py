"""Content-addressed, write-once blob cache.

Storage layout: {base_path}/{algorithm}/{hex[0:2]}/{hex[2:4]}/{hex}.dat
No delete method: blobs are immutable once stored.

Writes go to a temporary file in the destination directory and are moved
into place with ``os.replace``, so concurrent builds writing the same blob
never expose a partially written file and never conflict: both writers
produce identical bytes under an identical name.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from lockforge.core.hasher import digest_bytes, parse_digest
from lockforge.errors import CacheIntegrityError
from lockforge.models.artifacts import CachedBlob
from lockforge.models.lockfile import Digest

logger = logging.getLogger(__name__)


def write_atomic(path: Path, data: bytes, *, mode: int = 0o444) -> None:
    """Write *data* to *path* via a temp file and rename; readers never see a partial file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ContentAddressedStore:
    """Digest-keyed, immutable blob store.

    Storing the same content twice is a no-op. There is no update or delete.

    Parameters
    ----------
    base_path:
        Root directory for blob storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    @staticmethod
    def _as_digest(key: Digest | str) -> Digest:
        return key if isinstance(key, Digest) else parse_digest(key)

    def path_for(self, key: Digest | str) -> Path:
        """Compute the storage path for a digest."""
        digest = self._as_digest(key)
        hexd = digest.hex
        return self._base / digest.algorithm / hexd[:2] / hexd[2:4] / f"{hexd}.dat"

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(
        self,
        data: bytes,
        *,
        algorithm: str = "sha256",
        name: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> CachedBlob:
        """Store *data* under its own digest and return the blob metadata.

        If the blob already exists, its integrity is re-checked and the
        existing file is kept.
        """
        digest = digest_bytes(data, algorithm)
        path = self.path_for(digest)

        if path.exists():
            if not self.verify(digest):
                raise CacheIntegrityError(
                    f"Existing blob at {digest.address} failed integrity check"
                )
        else:
            write_atomic(path, data)
            logger.debug("cached %s (%d bytes)", digest.address, len(data))

        return CachedBlob(
            content_address=digest.address,
            path=path,
            size_bytes=len(data),
            name=name or digest.hex[:16],
            metadata=metadata or {},
        )

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    def retrieve(self, key: Digest | str) -> bytes:
        """Return blob bytes by digest, raising ``FileNotFoundError`` if absent."""
        path = self.path_for(key)
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {self._as_digest(key).address}")
        return path.read_bytes()

    def lookup(self, key: Digest | str) -> CachedBlob | None:
        """Return the blob if it is present and still matches its digest.

        A present blob that fails re-verification raises
        ``CacheIntegrityError``: the cache was tampered with or corrupted,
        and silently re-fetching would mask that.
        """
        digest = self._as_digest(key)
        path = self.path_for(digest)
        if not path.exists():
            return None
        if not self.verify(digest):
            raise CacheIntegrityError(
                f"Cached blob {digest.address} does not match its digest"
            )
        return CachedBlob(
            content_address=digest.address,
            path=path,
            size_bytes=path.stat().st_size,
        )

    # ------------------------------------------------------------------
    # Check and verify
    # ------------------------------------------------------------------

    def exists(self, key: Digest | str) -> bool:
        return self.path_for(key).exists()

    def verify(self, key: Digest | str) -> bool:
        """Re-hash stored bytes and compare against the digest."""
        digest = self._as_digest(key)
        path = self.path_for(digest)
        if not path.exists():
            return False
        return digest_bytes(path.read_bytes(), digest.algorithm) == digest
