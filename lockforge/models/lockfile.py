"""Lock file and verified-dependency models (immutable)."""

from __future__ import annotations

import base64
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class Digest(BaseModel):
    """A content digest: algorithm name plus raw digest bytes.

    Two digests are equal only if both the algorithm and every byte agree.
    """

    model_config = ConfigDict(frozen=True)

    algorithm: str = "sha256"
    value: bytes

    @property
    def hex(self) -> str:
        return self.value.hex()

    @property
    def address(self) -> str:
        """``<algorithm>:<hex>``: the key used by the content-addressed cache."""
        return f"{self.algorithm}:{self.hex}"

    @property
    def sri(self) -> str:
        """Subresource Integrity spelling, ``<algorithm>-<base64>``."""
        return f"{self.algorithm}-{base64.b64encode(self.value).decode('ascii')}"

    def __str__(self) -> str:
        return self.address


class LockEntry(BaseModel):
    """One pinned dependency.

    ``identifier`` is ``<name>-<version>`` and is unique within a lock file.
    ``origin`` overrides the origin otherwise inferred from ``source``.
    """

    model_config = ConfigDict(frozen=True)

    identifier: str
    name: str
    version: str
    source: str = ""
    digest: Digest
    origin: str | None = None

    @field_validator("identifier", "name")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value

    @property
    def is_git(self) -> bool:
        return self.source.startswith("git+")


class LockFile(BaseModel):
    """Ordered, read-only collection of lock entries."""

    model_config = ConfigDict(frozen=True)

    format_version: int
    entries: tuple[LockEntry, ...] = ()
    path: Path | None = None

    @model_validator(mode="after")
    def _unique_identifiers(self) -> LockFile:
        seen: set[str] = set()
        for entry in self.entries:
            if entry.identifier in seen:
                raise ValueError(f"duplicate lock entry {entry.identifier!r}")
            seen.add(entry.identifier)
        return self

    def get(self, identifier: str) -> LockEntry | None:
        for entry in self.entries:
            if entry.identifier == identifier:
                return entry
        return None


class VerifiedDependency(BaseModel):
    """A lock entry whose fetched bytes matched the recorded digest."""

    model_config = ConfigDict(frozen=True)

    entry: LockEntry
    cache_path: Path
    size_bytes: int
    origin: str


class VerifiedDependencySet(BaseModel):
    """The complete, verified dependency set handed to the compiler.

    Only the resolver constructs one, and only after every entry verified.
    """

    model_config = ConfigDict(frozen=True)

    format_version: int
    dependencies: tuple[VerifiedDependency, ...] = ()

    def __len__(self) -> int:
        return len(self.dependencies)

    def set_digest_input(self) -> list[str]:
        """Sorted digest addresses: input for the set's own content address."""
        return sorted(dep.entry.digest.address for dep in self.dependencies)
