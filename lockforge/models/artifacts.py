"""Content-addressed artifact models (immutable)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CachedBlob(BaseModel):
    """Metadata for a blob in the content-addressed cache.

    The bytes live in the cache; ``content_address`` is both identity and
    integrity check.
    """

    model_config = ConfigDict(frozen=True)

    content_address: str  # "sha256:<hex>"
    path: Path
    size_bytes: int
    name: str = ""
    metadata: dict[str, Any] = {}


class BuildMetadata(BaseModel):
    """Everything recorded about how an artifact was produced.

    ``built_at`` is the only field allowed to differ between two builds of
    identical inputs.
    """

    model_config = ConfigDict(frozen=True)

    toolchain_version: str
    target_platform: str
    profile: str = "release"
    dependency_set_address: str = ""
    lint_flags: tuple[str, ...] = ()
    tests_run: bool = False
    built_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def reproducible_view(self) -> dict[str, Any]:
        """Metadata with the declared non-reproducible fields removed."""
        return self.model_dump(mode="json", exclude={"built_at"})


class BuildArtifact(BaseModel):
    """The single executable produced by a successful compile.

    The binary bytes are held in the cache under ``content_address``;
    ``log_address`` points at the full build log.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    content_address: str
    size_bytes: int
    metadata: BuildMetadata
    log_address: str = ""
