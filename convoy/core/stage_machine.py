"""Deterministic stage state machine for pipeline runs.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Prerequisites checked before RUNNING
- Cascade blocking when a stage fails or is aborted
- Every transition recorded in the audit ledger
"""

from __future__ import annotations

import threading

from convoy.core.prerequisite_graph import PrerequisiteGraph, PrerequisiteNotMetError
from convoy.core.run_ledger import RunLedger
from convoy.models.ledger import LedgerEntry
from convoy.models.stages import VALID_TRANSITIONS, StageState


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class StageMachine:
    """Enforces the stage state machine with prerequisite checking.

    Parameters
    ----------
    ledger:
        The audit ledger to record transitions into.
    graph:
        The prerequisite graph for dependency checking.
    service_id:
        Recorded on every ledger entry this machine writes.
    """

    def __init__(self, ledger: RunLedger, graph: PrerequisiteGraph, service_id: str = "") -> None:
        self._ledger = ledger
        self._graph = graph
        self._service_id = service_id
        self._lock = threading.Lock()
        # run_id -> {stage_id -> StageState}
        self._states: dict[str, dict[str, StageState]] = {}

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def initialize_run(self, run_id: str) -> dict[str, StageState]:
        """Initialize all stages to NOT_STARTED for a new run."""
        states = {sid: StageState.NOT_STARTED for sid in self._graph.stage_ids}
        with self._lock:
            self._states[run_id] = states
        return dict(states)

    def get_current_state(self, run_id: str, stage_id: str) -> StageState:
        with self._lock:
            if run_id not in self._states:
                self._rebuild_state(run_id)
            return self._states[run_id].get(stage_id, StageState.NOT_STARTED)

    def get_all_states(self, run_id: str) -> dict[str, StageState]:
        with self._lock:
            if run_id not in self._states:
                self._rebuild_state(run_id)
            return dict(self._states[run_id])

    def _rebuild_state(self, run_id: str) -> None:
        """Rebuild in-memory state from the ledger."""
        states = {sid: StageState.NOT_STARTED for sid in self._graph.stage_ids}
        for entry in self._ledger.get_run_entries(run_id):
            if entry.stage_id not in states or "->" not in entry.state_transition:
                continue
            _, to_state = entry.state_transition.split("->", 1)
            try:
                states[entry.stage_id] = StageState(to_state)
            except ValueError:
                pass
        self._states[run_id] = states

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        run_id: str,
        stage_id: str,
        target_state: StageState,
        *,
        input_hash: str = "",
        output_hash: str = "",
        artifact_references: list[str] | None = None,
        detail: str = "",
    ) -> LedgerEntry:
        """Transition a stage to a new state, recording it in the ledger.

        Validates:
        1. The transition is allowed by VALID_TRANSITIONS.
        2. If target is RUNNING, prerequisites are met.
        3. If target is FAILED or ABORTED, dependents are cascade-blocked.

        Returns the sealed LedgerEntry.
        """
        with self._lock:
            if run_id not in self._states:
                self._rebuild_state(run_id)
            states = self._states[run_id]
            current = states.get(stage_id, StageState.NOT_STARTED)

            allowed = VALID_TRANSITIONS.get(current, set())
            if target_state not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {stage_id} from {current.value} to {target_state.value}. "
                    f"Allowed: {sorted(s.value for s in allowed)}"
                )

            if target_state == StageState.RUNNING and not self._graph.are_prerequisites_met(
                stage_id, states
            ):
                reasons = self._graph.get_blocking_reasons(stage_id, states)
                raise PrerequisiteNotMetError(
                    f"Cannot start {stage_id}: prerequisites not met. "
                    f"Blocked by: {'; '.join(reasons)}"
                )

            sealed = self._ledger.append(
                LedgerEntry(
                    run_id=run_id,
                    service_id=self._service_id,
                    stage_id=stage_id,
                    state_transition=f"{current.value}->{target_state.value}",
                    input_hash=input_hash,
                    output_hash=output_hash,
                    artifact_references=artifact_references or [],
                    detail=detail,
                )
            )
            states[stage_id] = target_state

            if target_state in (StageState.FAILED, StageState.ABORTED):
                for blocked_id in self._graph.cascade_block(stage_id, states):
                    self._ledger.append(
                        LedgerEntry(
                            run_id=run_id,
                            service_id=self._service_id,
                            stage_id=blocked_id,
                            state_transition=(
                                f"{StageState.NOT_STARTED.value}->{StageState.BLOCKED.value}"
                            ),
                            detail=f"upstream {stage_id} {target_state.value}",
                        )
                    )

        return sealed

    # ------------------------------------------------------------------
    # Convenience methods
    # ------------------------------------------------------------------

    def can_start(self, run_id: str, stage_id: str) -> tuple[bool, list[str]]:
        """Check if a stage can transition to RUNNING.

        Returns (can_start, blocking_reasons).
        """
        states = self.get_all_states(run_id)
        current = states.get(stage_id, StageState.NOT_STARTED)
        if current != StageState.NOT_STARTED:
            return False, [f"Stage is currently {current.value}, not not_started"]

        if not self._graph.are_prerequisites_met(stage_id, states):
            return False, self._graph.get_blocking_reasons(stage_id, states)

        return True, []

    def get_available_transitions(self, run_id: str, stage_id: str) -> set[StageState]:
        return VALID_TRANSITIONS.get(self.get_current_state(run_id, stage_id), set())
