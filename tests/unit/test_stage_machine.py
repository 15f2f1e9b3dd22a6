"""Tests for StageMachine and PrerequisiteGraph."""

from __future__ import annotations

import pytest

from convoy.core.prerequisite_graph import (
    CyclicDependencyError,
    PrerequisiteGraph,
    PrerequisiteNotMetError,
)
from convoy.core.run_ledger import RunLedger
from convoy.core.stage_machine import InvalidTransitionError, StageMachine
from convoy.models.stages import StageDefinition, StageState


class TestPrerequisiteGraph:
    def test_execution_order(self, graph: PrerequisiteGraph):
        assert graph.stage_ids == [
            "s0_trigger",
            "s1_build",
            "s2_scan",
            "s3_evaluate",
            "s4_publish",
            "s5_rollout",
        ]

    def test_transitive_dependents(self, graph: PrerequisiteGraph):
        assert graph.get_dependents("s2_scan") == ["s3_evaluate", "s4_publish", "s5_rollout"]
        assert graph.get_dependents("s5_rollout") == []

    def test_cycle_detected(self):
        with pytest.raises(CyclicDependencyError):
            PrerequisiteGraph(
                [
                    StageDefinition(stage_id="a", display_name="A", ordinal=0, prerequisites=["b"]),
                    StageDefinition(stage_id="b", display_name="B", ordinal=1, prerequisites=["a"]),
                ]
            )

    def test_blocking_reasons(self, graph: PrerequisiteGraph):
        states = {sid: StageState.NOT_STARTED for sid in graph.stage_ids}
        reasons = graph.get_blocking_reasons("s4_publish", states)
        assert reasons == ["Vulnerability Gate (s3_evaluate) is not_started"]

    def test_cascade_block_leaves_finished_stages(self, graph: PrerequisiteGraph):
        states = {sid: StageState.NOT_STARTED for sid in graph.stage_ids}
        states["s0_trigger"] = StageState.PASSED
        states["s1_build"] = StageState.FAILED
        blocked = graph.cascade_block("s1_build", states)
        assert blocked == ["s2_scan", "s3_evaluate", "s4_publish", "s5_rollout"]
        assert states["s0_trigger"] == StageState.PASSED


class TestStageMachine:
    def test_initialize(self, stage_machine: StageMachine, run_id: str):
        states = stage_machine.initialize_run(run_id)
        assert set(states.values()) == {StageState.NOT_STARTED}

    def test_valid_transition_recorded(self, stage_machine: StageMachine, ledger: RunLedger, run_id: str):
        stage_machine.initialize_run(run_id)
        entry = stage_machine.transition(run_id, "s0_trigger", StageState.RUNNING)
        assert entry.state_transition == "not_started->running"
        assert entry.service_id == "web"
        assert ledger.get_latest(run_id).entry_hash == entry.entry_hash

    def test_invalid_transition(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        with pytest.raises(InvalidTransitionError):
            stage_machine.transition(run_id, "s0_trigger", StageState.PASSED)

    def test_terminal_states_have_no_exit(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        stage_machine.transition(run_id, "s0_trigger", StageState.RUNNING)
        stage_machine.transition(run_id, "s0_trigger", StageState.FAILED)
        with pytest.raises(InvalidTransitionError):
            stage_machine.transition(run_id, "s0_trigger", StageState.RUNNING)

    def test_prerequisites_enforced(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        with pytest.raises(PrerequisiteNotMetError):
            stage_machine.transition(run_id, "s4_publish", StageState.RUNNING)

    def test_failure_cascades(self, stage_machine: StageMachine, ledger: RunLedger, run_id: str):
        stage_machine.initialize_run(run_id)
        for sid in ("s0_trigger", "s1_build", "s2_scan"):
            stage_machine.transition(run_id, sid, StageState.RUNNING)
            stage_machine.transition(run_id, sid, StageState.PASSED)
        stage_machine.transition(run_id, "s3_evaluate", StageState.RUNNING)
        stage_machine.transition(run_id, "s3_evaluate", StageState.FAILED, detail="PolicyBlocked")

        states = stage_machine.get_all_states(run_id)
        assert states["s4_publish"] == StageState.BLOCKED
        assert states["s5_rollout"] == StageState.BLOCKED
        blocked = ledger.get_stage_history(run_id, "s4_publish")
        assert blocked[-1].state_transition == "not_started->blocked"
        assert "s3_evaluate" in blocked[-1].detail

    def test_abort_before_start_cascades(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        stage_machine.transition(run_id, "s0_trigger", StageState.ABORTED)
        assert stage_machine.get_current_state(run_id, "s5_rollout") == StageState.BLOCKED

    def test_state_rebuilt_from_ledger(self, ledger: RunLedger, graph: PrerequisiteGraph, run_id: str):
        first = StageMachine(ledger, graph)
        first.initialize_run(run_id)
        first.transition(run_id, "s0_trigger", StageState.RUNNING)
        first.transition(run_id, "s0_trigger", StageState.PASSED)

        fresh = StageMachine(ledger, graph)
        assert fresh.get_current_state(run_id, "s0_trigger") == StageState.PASSED
        assert fresh.can_start(run_id, "s1_build") == (True, [])

    def test_can_start_reports_reasons(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        ok, reasons = stage_machine.can_start(run_id, "s2_scan")
        assert ok is False
        assert reasons == ["Build Image (s1_build) is not_started"]

    def test_available_transitions(self, stage_machine: StageMachine, run_id: str):
        stage_machine.initialize_run(run_id)
        assert StageState.RUNNING in stage_machine.get_available_transitions(run_id, "s0_trigger")
