"""lockforge data models: all Pydantic v2, all frozen (immutable)."""

from lockforge.models.artifacts import BuildArtifact, BuildMetadata, CachedBlob
from lockforge.models.config import BuildConfig, RunConfig
from lockforge.models.image import Image, ImageLayer, ImageSpec, PortProtocol, PortSpec
from lockforge.models.lockfile import (
    Digest,
    LockEntry,
    LockFile,
    VerifiedDependency,
    VerifiedDependencySet,
)
from lockforge.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    VALID_TRANSITIONS,
    StageDefinition,
    StageState,
)

__all__ = [
    # lock file
    "Digest",
    "LockEntry",
    "LockFile",
    "VerifiedDependency",
    "VerifiedDependencySet",
    # artifacts
    "CachedBlob",
    "BuildMetadata",
    "BuildArtifact",
    # image
    "PortProtocol",
    "PortSpec",
    "ImageSpec",
    "ImageLayer",
    "Image",
    # config
    "BuildConfig",
    "RunConfig",
    # stages
    "StageState",
    "StageDefinition",
    "VALID_TRANSITIONS",
    "DEFAULT_STAGE_DEFINITIONS",
]
