"""Pipeline run and trigger models.

A ``PipelineRun`` is created when a trigger arrives, mutated only by the
orchestrator (through the ``with_*`` copy helpers below), and immutable
once it reaches a terminal status.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from convoy.errors import RunFinalizedError
from convoy.models.service import RolloutState
from convoy.models.stages import DEFAULT_STAGE_DEFINITIONS, StageState


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.ABORTED)


class TriggerEvent(BaseModel):
    """The "new revision available" event, the only trigger type."""

    model_config = ConfigDict(frozen=True)

    repository: str
    revision: str  # commit sha or tag
    service_id: str
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class StageRecord(BaseModel):
    """Status of one stage within a run."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    state: StageState = StageState.NOT_STARTED
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_kind: str = ""
    error_message: str = ""


def _new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"run-{ts}-{uuid.uuid4().hex[:6]}"


class PipelineRun(BaseModel):
    """One pass of a trigger through the release pipeline."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=_new_run_id)
    service_id: str
    trigger: TriggerEvent
    stages: tuple[StageRecord, ...] = Field(
        default_factory=lambda: tuple(
            StageRecord(stage_id=sd.stage_id) for sd in DEFAULT_STAGE_DEFINITIONS
        )
    )
    status: RunStatus = RunStatus.QUEUED
    image_ref: str = ""
    rollout_state: RolloutState | None = None
    abort_reason: str = ""
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def stage(self, stage_id: str) -> StageRecord:
        for record in self.stages:
            if record.stage_id == stage_id:
                return record
        raise KeyError(stage_id)

    def _check_mutable(self) -> None:
        if self.is_terminal:
            raise RunFinalizedError(
                f"Run {self.run_id} is {self.status.value}; terminal runs are immutable"
            )

    def with_stage(self, stage_id: str, **changes: Any) -> PipelineRun:
        """Return a copy with one stage record updated."""
        self._check_mutable()
        stages = tuple(
            record.model_copy(update=changes) if record.stage_id == stage_id else record
            for record in self.stages
        )
        return self.model_copy(update={"stages": stages})

    def with_status(self, status: RunStatus, **changes: Any) -> PipelineRun:
        """Return a copy with a new status; terminal statuses stamp finished_at."""
        self._check_mutable()
        update: dict[str, Any] = {"status": status, **changes}
        if status.is_terminal:
            update["finished_at"] = datetime.now(timezone.utc)
        return self.model_copy(update=update)
