"""Tests for the PrerequisiteGraph: DAG ordering, closure and cascade blocking."""

from __future__ import annotations

import pytest

from lockforge.core.prerequisite_graph import (
    CyclicDependencyError,
    PrerequisiteGraph,
)
from lockforge.models.stages import (
    VALID_TRANSITIONS,
    StageDefinition,
    StageState,
)


class TestPrerequisiteGraph:
    def test_builds_from_defaults(self, graph: PrerequisiteGraph):
        assert graph.stage_ids == ["s0_resolve", "s1_compile", "s2_assemble"]

    def test_prerequisites(self, graph: PrerequisiteGraph):
        assert graph.get_prerequisites("s0_resolve") == []
        assert graph.get_prerequisites("s1_compile") == ["s0_resolve"]
        assert graph.get_prerequisites("s2_assemble") == ["s1_compile"]

    def test_prerequisites_met_initial(self, graph: PrerequisiteGraph):
        states = {sid: StageState.NOT_STARTED for sid in graph.stage_ids}
        assert graph.are_prerequisites_met("s0_resolve", states) is True
        assert graph.are_prerequisites_met("s1_compile", states) is False

    def test_prerequisites_met_after_pass(self, graph: PrerequisiteGraph):
        states = {sid: StageState.NOT_STARTED for sid in graph.stage_ids}
        states["s0_resolve"] = StageState.PASSED
        assert graph.are_prerequisites_met("s1_compile", states) is True

    def test_failed_prerequisite_is_not_met(self, graph: PrerequisiteGraph):
        states = {sid: StageState.NOT_STARTED for sid in graph.stage_ids}
        states["s0_resolve"] = StageState.FAILED
        assert graph.are_prerequisites_met("s1_compile", states) is False

    def test_cascade_block(self, graph: PrerequisiteGraph):
        states = {sid: StageState.NOT_STARTED for sid in graph.stage_ids}
        states["s0_resolve"] = StageState.FAILED
        blocked = graph.cascade_block("s0_resolve", states)
        assert blocked == ["s1_compile", "s2_assemble"]
        assert states["s2_assemble"] == StageState.BLOCKED
        assert states["s0_resolve"] == StageState.FAILED

    def test_cascade_block_leaves_finished_stages(self, graph: PrerequisiteGraph):
        states = {
            "s0_resolve": StageState.PASSED,
            "s1_compile": StageState.FAILED,
            "s2_assemble": StageState.NOT_STARTED,
        }
        assert graph.cascade_block("s1_compile", states) == ["s2_assemble"]
        assert states["s0_resolve"] == StageState.PASSED

    def test_get_dependents_transitive(self, graph: PrerequisiteGraph):
        assert graph.get_dependents("s0_resolve") == ["s1_compile", "s2_assemble"]
        assert graph.get_dependents("s2_assemble") == []

    @pytest.mark.parametrize(
        ("stage", "expected"),
        [
            ("s0_resolve", ["s0_resolve"]),
            ("s1_compile", ["s0_resolve", "s1_compile"]),
            ("s2_assemble", ["s0_resolve", "s1_compile", "s2_assemble"]),
        ],
    )
    def test_closure(self, graph: PrerequisiteGraph, stage: str, expected: list[str]):
        assert graph.closure(stage) == expected

    def test_cyclic_dependency_rejected(self):
        with pytest.raises(CyclicDependencyError):
            PrerequisiteGraph([
                StageDefinition(stage_id="a", display_name="A", ordinal=0, prerequisites=["b"]),
                StageDefinition(stage_id="b", display_name="B", ordinal=1, prerequisites=["a"]),
            ])

    def test_ordinal_breaks_ties(self):
        graph = PrerequisiteGraph([
            StageDefinition(stage_id="late", display_name="L", ordinal=2),
            StageDefinition(stage_id="early", display_name="E", ordinal=1),
        ])
        assert graph.stage_ids == ["early", "late"]


class TestTransitions:
    def test_terminal_states(self):
        for state in (StageState.PASSED, StageState.FAILED, StageState.BLOCKED):
            assert VALID_TRANSITIONS[state] == set()

    def test_running_only_from_not_started(self):
        allowed_from = {s for s, targets in VALID_TRANSITIONS.items() if StageState.RUNNING in targets}
        assert allowed_from == {StageState.NOT_STARTED}
