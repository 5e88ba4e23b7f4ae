"""Per-build configuration model."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class BuildConfig(BaseModel):
    """Everything a single build invocation needs beyond the settings.

    Loaded from CLI options (or constructed directly by callers). Paths are
    host paths; in-image paths are derived by ``lockforge.core.image_spec``.
    """

    model_config = ConfigDict(frozen=True)

    package_name: str
    package_version: str = "0.1.0"
    source_tree: Path
    lock_file: Path | None = None  # defaults to <source_tree>/Cargo.lock

    # Override hashes and origins for non-registry sources, keyed by
    # "<name>-<version>". Merged over the lock file's own tables.
    output_hashes: dict[str, str] = {}
    origins: dict[str, str] = {}

    target: str | None = None
    profile: str = "release"
    run_tests: bool = False

    # Image inputs
    image_name: str | None = None
    image_tag: str = "latest"
    base_packages: list[Path] = []
    trust_bundle: Path = Path("/etc/ssl/certs/ca-bundle.crt")
    supervisor: Path = Path("/usr/bin/tini")

    @property
    def resolved_lock_file(self) -> Path:
        return self.lock_file or self.source_tree / "Cargo.lock"

    @property
    def resolved_image_name(self) -> str:
        return self.image_name or self.package_name


class RunConfig(BaseModel):
    """Per-run identity, created when the orchestrator starts a run."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=lambda: f"lf-{uuid.uuid4().hex[:12]}")
    build_config: BuildConfig
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
