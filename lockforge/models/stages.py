"""Stage state machine models: deterministic, gated transitions."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class StageState(str, Enum):
    """Strict state model for each pipeline stage."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    BLOCKED = "blocked"
    FAILED = "failed"
    PASSED = "passed"


# Valid state transitions. PASSED is terminal for a run; a failed run is
# re-invoked from scratch rather than resumed.
VALID_TRANSITIONS: dict[StageState, set[StageState]] = {
    StageState.NOT_STARTED: {StageState.RUNNING, StageState.BLOCKED},
    StageState.RUNNING: {StageState.PASSED, StageState.FAILED},
    StageState.BLOCKED: set(),
    StageState.FAILED: set(),
    StageState.PASSED: set(),
}


class StageDefinition(BaseModel):
    """Defines a pipeline stage and its prerequisites.

    A stage cannot enter RUNNING unless every prerequisite is PASSED.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    ordinal: int
    prerequisites: list[str] = []


# The fixed lockforge build graph.
DEFAULT_STAGE_DEFINITIONS: list[StageDefinition] = [
    StageDefinition(
        stage_id="s0_resolve",
        display_name="Dependency Resolution",
        ordinal=0,
        prerequisites=[],
    ),
    StageDefinition(
        stage_id="s1_compile",
        display_name="Hermetic Compile",
        ordinal=1,
        prerequisites=["s0_resolve"],
    ),
    StageDefinition(
        stage_id="s2_assemble",
        display_name="Image Assembly",
        ordinal=2,
        prerequisites=["s1_compile"],
    ),
]
