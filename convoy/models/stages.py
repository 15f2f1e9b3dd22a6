"""Pipeline stage state machine models and their deterministic transitions."""

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
    ABORTED = "aborted"


# Valid state transitions, enforced structurally by StageMachine.
# A run is never retried in place; a new trigger creates a new run, so
# every state other than NOT_STARTED and RUNNING is terminal.
VALID_TRANSITIONS: dict[StageState, set[StageState]] = {
    StageState.NOT_STARTED: {StageState.RUNNING, StageState.BLOCKED, StageState.ABORTED},
    StageState.RUNNING: {StageState.PASSED, StageState.FAILED, StageState.ABORTED},
    StageState.BLOCKED: set(),
    StageState.FAILED: set(),
    StageState.PASSED: set(),
    StageState.ABORTED: set(),
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
    is_mandatory_gate: bool = False
    commits_artifact: bool = False  # True once the stage makes an image reference visible


STAGE_TRIGGER = "s0_trigger"
STAGE_BUILD = "s1_build"
STAGE_SCAN = "s2_scan"
STAGE_EVALUATE = "s3_evaluate"
STAGE_PUBLISH = "s4_publish"
STAGE_ROLLOUT = "s5_rollout"

# Run-level transitions are recorded in the ledger under this pseudo stage.
RUN_STAGE_ID = "run"


DEFAULT_STAGE_DEFINITIONS: list[StageDefinition] = [
    StageDefinition(
        stage_id=STAGE_TRIGGER,
        display_name="Trigger Intake",
        ordinal=0,
    ),
    StageDefinition(
        stage_id=STAGE_BUILD,
        display_name="Build Image",
        ordinal=1,
        prerequisites=[STAGE_TRIGGER],
    ),
    StageDefinition(
        stage_id=STAGE_SCAN,
        display_name="Vulnerability Scan",
        ordinal=2,
        prerequisites=[STAGE_BUILD],
    ),
    StageDefinition(
        stage_id=STAGE_EVALUATE,
        display_name="Vulnerability Gate",
        ordinal=3,
        prerequisites=[STAGE_SCAN],
        is_mandatory_gate=True,
    ),
    StageDefinition(
        stage_id=STAGE_PUBLISH,
        display_name="Publish Image",
        ordinal=4,
        prerequisites=[STAGE_EVALUATE],
        commits_artifact=True,
    ),
    StageDefinition(
        stage_id=STAGE_ROLLOUT,
        display_name="Service Rollout",
        ordinal=5,
        prerequisites=[STAGE_PUBLISH],
    ),
]
