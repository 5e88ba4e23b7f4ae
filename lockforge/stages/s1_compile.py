"""Stage 1: Hermetic Compile.

Consumes the verified dependency set from Stage 0 and the source tree from
the build configuration, and produces exactly one ``BuildArtifact``. The
stage never runs against an unverified set: it refuses to start without
``verified_dependencies`` on the run context, on top of the prerequisite
check.
"""

from __future__ import annotations

import logging
from typing import Any

from lockforge.core.compiler import HermeticCompiler
from lockforge.core.hasher import content_address
from lockforge.errors import CompileError
from lockforge.models.config import BuildConfig
from lockforge.models.lockfile import VerifiedDependencySet
from lockforge.stages.base import BaseStage

logger = logging.getLogger(__name__)


class CompileStage(BaseStage):
    """Stage 1: Hermetic Compile: source tree + verified deps -> artifact."""

    def __init__(self, compiler: HermeticCompiler) -> None:
        self._compiler = compiler

    @property
    def stage_id(self) -> str:
        return "s1_compile"

    @property
    def display_name(self) -> str:
        return "Hermetic Compile"

    def stage_inputs(self, run_context: dict[str, Any]) -> dict[str, Any]:
        build_config: BuildConfig = run_context["build_config"]
        verified: VerifiedDependencySet | None = run_context.get("verified_dependencies")
        return {
            "package": build_config.package_name,
            "version": build_config.package_version,
            "profile": build_config.profile,
            "target": build_config.target,
            "dependencies": content_address(
                verified.set_digest_input() if verified else []
            ),
        }

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        build_config: BuildConfig = run_context["build_config"]
        verified: VerifiedDependencySet | None = run_context.get("verified_dependencies")
        if verified is None:
            message = "no verified dependency set; refusing to compile"
            raise CompileError(message, log=message + "\n")

        artifact = self._compiler.build(
            build_config.source_tree, verified, build_config.package_name
        )
        run_context["artifact"] = artifact

        return {
            "artifact": artifact.name,
            "content_address": artifact.content_address,
            "size_bytes": artifact.size_bytes,
            "metadata": artifact.metadata.reproducible_view(),
        }
