"""lockforge pipeline stages: the fixed build graph, in execution order.

Usage::

    from lockforge.stages import STAGE_ORDER, ResolveStage

    stage = ResolveStage(resolver)
    result = stage.run_stage(run_context)
"""

from __future__ import annotations

from lockforge.stages.base import BaseStage, StageExecutionError, StagePrerequisiteError
from lockforge.stages.s0_resolve import ResolveStage
from lockforge.stages.s1_compile import CompileStage
from lockforge.stages.s2_assemble import AssembleStage

STAGE_ORDER: list[str] = [
    "s0_resolve",
    "s1_compile",
    "s2_assemble",
]

__all__ = [
    "BaseStage",
    "StageExecutionError",
    "StagePrerequisiteError",
    "STAGE_ORDER",
    "ResolveStage",
    "CompileStage",
    "AssembleStage",
]
