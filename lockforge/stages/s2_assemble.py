"""Stage 2: Image Assembly.

Takes the ``BuildArtifact`` from Stage 1 and the ``ImageSpec`` validated
before the run started, and assembles the layered image with the
supervisor-wrapped entrypoint.
"""

from __future__ import annotations

import logging
from typing import Any

from lockforge.core.assembler import ImageAssembler
from lockforge.errors import AssemblyError
from lockforge.models.artifacts import BuildArtifact
from lockforge.models.image import ImageSpec
from lockforge.stages.base import BaseStage

logger = logging.getLogger(__name__)


class AssembleStage(BaseStage):
    """Stage 2: Image Assembly: artifact + spec -> image."""

    def __init__(self, assembler: ImageAssembler) -> None:
        self._assembler = assembler

    @property
    def stage_id(self) -> str:
        return "s2_assemble"

    @property
    def display_name(self) -> str:
        return "Image Assembly"

    def stage_inputs(self, run_context: dict[str, Any]) -> dict[str, Any]:
        spec: ImageSpec = run_context["image_spec"]
        artifact: BuildArtifact | None = run_context.get("artifact")
        return {
            "spec": spec.model_dump(mode="json", exclude={"exposed_ports"}),
            "exposed_ports": sorted(spec.exposed_ports_config()),
            "artifact": artifact.content_address if artifact else "",
        }

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        spec: ImageSpec = run_context["image_spec"]
        artifact: BuildArtifact | None = run_context.get("artifact")
        if artifact is None:
            raise AssemblyError("no build artifact; refusing to assemble")

        image = self._assembler.assemble(spec, artifact)
        run_context["image"] = image

        # "created" is deliberately left out: it is the one field allowed
        # to differ between assemblies of identical inputs.
        return {
            "reference": image.reference,
            "layers": list(image.filesystem_digests()),
            "entrypoint": list(image.entrypoint),
            "env": image.env,
            "exposed_ports": list(image.exposed_ports),
        }
