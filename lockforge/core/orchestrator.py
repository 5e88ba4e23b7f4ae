"""Pipeline orchestrator: the central coordinator for lockforge runs.

The Orchestrator wires the content-addressed cache, LockResolver,
HermeticCompiler and ImageAssembler into the fixed build graph
(resolve -> compile -> assemble) and exposes the two build actions:

    build_package() : resolve + compile, writes the executable
    build_image()   : resolve + compile + assemble, writes a docker-archive

Stages run strictly in sequence. The first failure marks the stage FAILED,
blocks every dependent stage, and propagates; nothing after it runs and no
output is written for it except the diagnostic build log and run record.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from lockforge.config import ForgeSettings
from lockforge.core.assembler import ImageAssembler, export_docker_archive
from lockforge.core.cache import ContentAddressedStore, write_atomic
from lockforge.core.compiler import HermeticCompiler, ProcessRunner, subprocess_runner
from lockforge.core.fetcher import Fetcher, HttpFetcher
from lockforge.core.image_spec import build_image_spec
from lockforge.core.lockfile import load_lock_file
from lockforge.core.prerequisite_graph import PrerequisiteGraph
from lockforge.core.resolver import LockResolver
from lockforge.errors import CompileError, PipelineError
from lockforge.models.artifacts import BuildArtifact
from lockforge.models.config import BuildConfig, RunConfig
from lockforge.models.image import Image
from lockforge.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    VALID_TRANSITIONS,
    StageState,
)
from lockforge.stages import AssembleStage, BaseStage, CompileStage, ResolveStage

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class Orchestrator:
    """Central pipeline orchestrator.

    Parameters
    ----------
    config:
        Per-build configuration.
    settings:
        Runtime settings. Uses ``ForgeSettings()`` if not provided.
    fetcher:
        Fetch backend. Defaults to ``HttpFetcher``.
    runner:
        Process runner for the toolchain. Defaults to ``subprocess_runner``.
    clock:
        Clock used for the image ``created`` timestamp.
    sleep:
        Sleep used between fetch retries.
    """

    def __init__(
        self,
        config: BuildConfig,
        settings: ForgeSettings | None = None,
        *,
        fetcher: Fetcher | None = None,
        runner: ProcessRunner | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.settings = settings or ForgeSettings()

        self.cache = ContentAddressedStore(self.settings.cache_path)
        self.resolver = LockResolver(
            self.cache,
            fetcher or HttpFetcher(timeout=self.settings.fetch_timeout_seconds),
            registry_url=self.settings.registry_url,
            retries=self.settings.fetch_retries,
            backoff_seconds=self.settings.fetch_backoff_seconds,
            max_workers=self.settings.max_concurrent_fetches,
            sleep=sleep,
        )
        self.compiler = HermeticCompiler(
            self.cache,
            runner or subprocess_runner,
            lint_flags=self.settings.lint_flags,
            run_tests=config.run_tests or self.settings.run_tests,
            network_isolation=self.settings.network_isolation,
            profile=config.profile,
            target=config.target,
        )
        self.assembler = ImageAssembler(
            self.cache,
            created=self.settings.image_created,
            clock=clock or (lambda: datetime.now(timezone.utc)),
        )
        self.graph = PrerequisiteGraph(DEFAULT_STAGE_DEFINITIONS)
        self.stages: dict[str, BaseStage] = {
            "s0_resolve": ResolveStage(self.resolver),
            "s1_compile": CompileStage(self.compiler),
            "s2_assemble": AssembleStage(self.assembler),
        }

        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        self.run_config = RunConfig(
            run_id=f"lf-{ts}-{uuid.uuid4().hex[:3]}", build_config=config
        )
        self.states: dict[str, StageState] = {}
        self.run_context: dict[str, Any] = {}

    @property
    def run_id(self) -> str:
        return self.run_config.run_id

    @property
    def output_dir(self) -> Path:
        return self.settings.output_path

    # ------------------------------------------------------------------
    # Build actions
    # ------------------------------------------------------------------

    def build_package(self) -> BuildArtifact:
        """Resolve and compile; write the executable to ``<output>/bin/``."""
        context = self._run_through("s1_compile")
        artifact: BuildArtifact = context["artifact"]

        binary_path = self.output_dir / "bin" / artifact.name
        write_atomic(binary_path, self.cache.retrieve(artifact.content_address), mode=0o755)
        self._write_build_log(self.cache.retrieve(artifact.log_address).decode("utf-8"))
        logger.info("package written to %s", binary_path)
        return artifact

    def build_image(self) -> Image:
        """Resolve, compile and assemble; write ``<output>/<name>-<tag>.tar``.

        The image spec is validated before any stage runs, so an
        inconsistent runtime declaration fails without fetching anything.
        """
        spec = build_image_spec(
            self.config, observability_address=self.settings.observability_address
        )
        context = self._run_through("s2_assemble", image_spec=spec)
        image: Image = context["image"]
        artifact: BuildArtifact = context["artifact"]

        self._write_build_log(self.cache.retrieve(artifact.log_address).decode("utf-8"))
        export_docker_archive(image, self.cache, self.image_archive_path(image))
        return image

    def image_archive_path(self, image: Image) -> Path:
        return self.output_dir / f"{image.name}-{image.tag}.tar"

    def verify_lock(self) -> dict[str, Any]:
        """Run only the resolution gate and return its summary."""
        context = self._run_through("s0_resolve")
        return context["stage_results"]["s0_resolve"]

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def _run_through(self, final_stage: str, **extra: Any) -> dict[str, Any]:
        self.states = {sid: StageState.NOT_STARTED for sid in self.graph.stage_ids}

        # A malformed lock file stops the pipeline before any stage starts.
        lock_file = load_lock_file(
            self.config.resolved_lock_file,
            output_hashes=self.config.output_hashes,
            origins=self.config.origins,
        )

        context: dict[str, Any] = {
            "run_id": self.run_id,
            "build_config": self.config,
            "lock_file": lock_file,
            "stage_states": self.states,
            "stage_definitions": {
                sid: {"prerequisites": self.graph.get_prerequisites(sid)}
                for sid in self.graph.stage_ids
            },
            **extra,
        }
        self.run_context = context

        try:
            for stage_id in self.graph.closure(final_stage):
                self._execute(stage_id, context)
        finally:
            self._write_run_record(context)
        return context

    def _execute(self, stage_id: str, context: dict[str, Any]) -> None:
        stage = self.stages[stage_id]
        self._transition(stage_id, StageState.RUNNING)
        try:
            stage.run_stage(context)
        except PipelineError as exc:
            self._transition(stage_id, StageState.FAILED)
            blocked = self.graph.cascade_block(stage_id, self.states)
            logger.error(
                "stage %s failed (%s); blocked %s",
                stage_id,
                type(exc).__name__,
                blocked or "nothing",
            )
            if isinstance(exc, CompileError):
                self._write_build_log(exc.log)
            raise
        self._transition(stage_id, StageState.PASSED)

    def _transition(self, stage_id: str, target: StageState) -> None:
        current = self.states.get(stage_id, StageState.NOT_STARTED)
        if target not in VALID_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(
                f"Cannot transition {stage_id} from {current.value} to {target.value}"
            )
        if target == StageState.RUNNING and not self.graph.are_prerequisites_met(
            stage_id, self.states
        ):
            raise InvalidTransitionError(
                f"Cannot start {stage_id}: prerequisites "
                f"{self.graph.get_prerequisites(stage_id)} not passed"
            )
        self.states[stage_id] = target

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def build_log_path(self) -> Path:
        return self.output_dir / f"{self.config.package_name}.build.log"

    def _write_build_log(self, log: str) -> None:
        write_atomic(self.build_log_path(), log.encode("utf-8"), mode=0o644)

    def _write_run_record(self, context: dict[str, Any]) -> None:
        record = {
            "run_id": self.run_id,
            "package": self.config.package_name,
            "states": {sid: state.value for sid, state in self.states.items()},
            "stages": context.get("stage_records", []),
        }
        path = self.output_dir / "runs" / f"{self.run_id}.json"
        write_atomic(path, json.dumps(record, indent=2).encode("utf-8"), mode=0o644)
