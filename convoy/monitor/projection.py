"""MonitorProjection: read-only view of a pipeline run rebuilt from the ledger.

The monitor never keeps state of its own.  Every ``snapshot()`` re-reads the
ledger and replays the run's transitions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from convoy.core.run_ledger import LedgerIntegrityError, RunLedger
from convoy.models.ledger import LedgerEntry
from convoy.models.pipeline import RunStatus
from convoy.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    RUN_STAGE_ID,
    StageDefinition,
    StageState,
)


class StageStatus(BaseModel):
    """Point-in-time status of one stage, derived from ledger entries."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    state: StageState = StageState.NOT_STARTED
    entered_at: datetime | None = None
    detail: str = ""
    artifact_refs: list[str] = []


class MonitorSnapshot(BaseModel):
    """A frozen snapshot of one pipeline run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    service_id: str = ""
    status: RunStatus | None = None
    status_detail: str = ""
    stages: list[StageStatus] = []
    artifact_count: int = 0
    chain_valid: bool = True
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.stages if s.state == StageState.PASSED)

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def failed_stages(self) -> list[StageStatus]:
        return [s for s in self.stages if s.state == StageState.FAILED]

    @property
    def blocked_stages(self) -> list[StageStatus]:
        return [s for s in self.stages if s.state == StageState.BLOCKED]


class MonitorProjection:
    """Read-only projection over the RunLedger.

    Parameters
    ----------
    ledger:
        The RunLedger to project from.
    stage_definitions:
        Stage definitions for display names and ordering.
    """

    def __init__(
        self,
        ledger: RunLedger,
        stage_definitions: list[StageDefinition] | None = None,
    ) -> None:
        self._ledger = ledger
        defs = sorted(stage_definitions or DEFAULT_STAGE_DEFINITIONS, key=lambda sd: sd.ordinal)
        self._stage_defs = {sd.stage_id: sd for sd in defs}
        self._stage_order = [sd.stage_id for sd in defs]

    def snapshot(self, run_id: str) -> MonitorSnapshot:
        entries = self._ledger.get_run_entries(run_id)
        stage_info = self._compute_stage_states(entries)

        stages = [
            StageStatus(
                stage_id=stage_id,
                display_name=self._stage_defs[stage_id].display_name,
                **stage_info.get(stage_id, {}),
            )
            for stage_id in self._stage_order
        ]

        status, status_detail = self._run_status(entries)
        refs = {ref for entry in entries for ref in entry.artifact_references}

        return MonitorSnapshot(
            run_id=run_id,
            service_id=entries[0].service_id if entries else "",
            status=status,
            status_detail=status_detail,
            stages=stages,
            artifact_count=len(refs),
            chain_valid=self._check_chain_valid(run_id),
            last_updated=entries[-1].timestamp_utc if entries else datetime.now(timezone.utc),
        )

    def list_runs(self, service_id: str | None = None) -> list[MonitorSnapshot]:
        """Snapshots of every run in the ledger, most recent first."""
        return [self.snapshot(rid) for rid in self._ledger.get_all_run_ids(service_id)]

    # ------------------------------------------------------------------

    def _compute_stage_states(self, entries: list[LedgerEntry]) -> dict[str, dict[str, Any]]:
        result: dict[str, dict[str, Any]] = {}
        for entry in entries:
            if entry.stage_id not in self._stage_defs or "->" not in entry.state_transition:
                continue
            _, to_state = entry.state_transition.split("->", 1)
            try:
                state = StageState(to_state)
            except ValueError:
                continue
            info = result.setdefault(entry.stage_id, {"artifact_refs": []})
            info["state"] = state
            info["entered_at"] = entry.timestamp_utc
            if entry.detail:
                info["detail"] = entry.detail
            info["artifact_refs"].extend(entry.artifact_references)
        return result

    @staticmethod
    def _run_status(entries: list[LedgerEntry]) -> tuple[RunStatus | None, str]:
        status: RunStatus | None = None
        detail = ""
        for entry in entries:
            if entry.stage_id != RUN_STAGE_ID or "->" not in entry.state_transition:
                continue
            try:
                status = RunStatus(entry.state_transition.split("->", 1)[1])
            except ValueError:
                continue
            detail = entry.detail
        return status, detail

    def _check_chain_valid(self, run_id: str) -> bool:
        try:
            return self._ledger.verify_chain(run_id)
        except LedgerIntegrityError:
            return False
