"""Abstract base stage with enforced lifecycle.

Every concrete stage inherits from BaseStage and implements only ``execute()``.
The ``run_stage()`` wrapper is **not overridable**: it enforces the canonical
lifecycle ordering:

    validate_prerequisites -> compute_input_hash -> execute
        -> compute_output_hash -> record

Typed pipeline errors (``HashMismatch``, ``CompileError``, ...) propagate
unchanged so callers can tell stages apart; anything else a stage raises is
wrapped in ``StageExecutionError``.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timezone
from typing import Any, final

from lockforge.core.hasher import (
    compute_input_hash,
    compute_output_hash,
)
from lockforge.errors import PipelineError
from lockforge.models.stages import StageState

logger = logging.getLogger(__name__)


class StagePrerequisiteError(PipelineError):
    """Raised when a stage's prerequisites are not satisfied."""


class StageExecutionError(PipelineError):
    """Raised when a stage fails with an error outside the pipeline taxonomy."""


class BaseStage(abc.ABC):
    """Abstract base for all lockforge pipeline stages.

    Subclasses **must** implement:
        * ``stage_id``  : unique identifier (e.g. ``"s0_resolve"``).
        * ``display_name``: human-readable name used in diagnostics.
        * ``execute(run_context)``: the stage's core logic.
        * ``stage_inputs(run_context)``: the JSON-serializable inputs
          that determine the stage's output.

    Subclasses **must not** override ``run_stage()``.
    """

    @property
    @abc.abstractmethod
    def stage_id(self) -> str:
        ...

    @property
    @abc.abstractmethod
    def display_name(self) -> str:
        ...

    @abc.abstractmethod
    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Execute the stage's core logic.

        Parameters
        ----------
        run_context:
            Mutable dict carrying run-wide state: ``run_id``, typed outputs
            of earlier stages, ``stage_states`` and ``stage_results``.

        Returns
        -------
        dict:
            JSON-serializable summary of what the stage produced.
        """
        ...

    @abc.abstractmethod
    def stage_inputs(self, run_context: dict[str, Any]) -> dict[str, Any]:
        ...

    # ------------------------------------------------------------------
    # Lifecycle: NOT overridable
    # ------------------------------------------------------------------

    @final
    def run_stage(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Execute the full stage lifecycle.  **Do not override.**

        Returns the summary produced by ``execute()``, augmented with
        ``_input_hash`` and ``_output_hash`` keys.
        """
        self.validate_prerequisites(run_context)

        input_hash = compute_input_hash(self.stage_id, self.stage_inputs(run_context))
        logger.info(
            "%s [%s] input_hash=%s",
            self.display_name,
            self.stage_id,
            input_hash,
        )

        try:
            result = self.execute(run_context)
        except PipelineError:
            logger.error("%s [%s] failed", self.display_name, self.stage_id)
            raise
        except Exception as exc:
            logger.error(
                "%s [%s] execution failed: %s",
                self.display_name,
                self.stage_id,
                exc,
            )
            error = StageExecutionError(f"Stage {self.stage_id} failed: {exc}")
            error.stage = self.stage_id
            raise error from exc

        output_hash = self._compute_output_hash(result)
        logger.info(
            "%s [%s] output_hash=%s",
            self.display_name,
            self.stage_id,
            output_hash,
        )

        self._record(run_context, result, input_hash, output_hash)

        result["_input_hash"] = input_hash
        result["_output_hash"] = output_hash
        return result

    @final
    def validate_prerequisites(self, run_context: dict[str, Any]) -> None:
        """Ensure all prerequisite stages are PASSED.

        Reads ``stage_states`` (``stage_id -> StageState``) and
        ``stage_definitions`` (``stage_id -> {"prerequisites": [...]}``)
        from *run_context*.
        """
        stage_states: dict[str, StageState] = run_context.get("stage_states", {})
        prerequisites: list[str] = run_context.get(
            "stage_definitions", {}
        ).get(self.stage_id, {}).get("prerequisites", [])

        blocking: list[str] = []
        for prereq_id in prerequisites:
            state = stage_states.get(prereq_id, StageState.NOT_STARTED)
            if state != StageState.PASSED:
                blocking.append(f"{prereq_id} is {state.value}")

        if blocking:
            error = StagePrerequisiteError(
                f"Cannot run {self.stage_id}: prerequisites not met: "
                + "; ".join(blocking)
            )
            error.stage = self.stage_id
            raise error

    @final
    def _compute_output_hash(self, result: dict[str, Any]) -> str:
        hashable = {k: v for k, v in result.items() if not k.startswith("_")}
        return compute_output_hash(self.stage_id, hashable)

    @final
    def _record(
        self,
        run_context: dict[str, Any],
        result: dict[str, Any],
        input_hash: str,
        output_hash: str,
    ) -> None:
        """Store the stage summary and a run-record entry in *run_context*."""
        run_context.setdefault("stage_results", {})[self.stage_id] = result
        run_context.setdefault("stage_records", []).append({
            "run_id": run_context.get("run_id", ""),
            "stage_id": self.stage_id,
            "state_transition": f"{StageState.RUNNING.value}->{StageState.PASSED.value}",
            "input_hash": input_hash,
            "output_hash": output_hash,
            "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        })

    def __repr__(self) -> str:
        return f"<{type(self).__name__} stage_id={self.stage_id!r}>"
