"""Unit tests for the MonitorRenderer: Rich panels, tables and colour maps."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from convoy.models.pipeline import RunStatus
from convoy.models.service import ScalingAction, ScalingEvent, ServiceState, Task, TaskHealth
from convoy.models.stages import StageState
from convoy.monitor.projection import MonitorSnapshot, StageStatus
from convoy.monitor.renderer import (
    _HEALTH_STYLES,
    _RUN_STYLES,
    _STATE_LABELS,
    _STATE_STYLES,
    MonitorRenderer,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_snapshot(chain_valid: bool = True, status: RunStatus | None = RunStatus.FAILED):
    return MonitorSnapshot(
        run_id="run-test-001",
        service_id="web",
        status=status,
        status_detail="PolicyBlocked: 1 finding at or above CRITICAL",
        stages=[
            StageStatus(stage_id="s2_scan", display_name="Vulnerability Scan", state=StageState.PASSED),
            StageStatus(
                stage_id="s3_evaluate",
                display_name="Vulnerability Gate",
                state=StageState.FAILED,
                detail="PolicyBlocked",
            ),
            StageStatus(
                stage_id="s4_publish",
                display_name="Publish Image",
                state=StageState.BLOCKED,
                detail="upstream s3_evaluate failed",
            ),
        ],
        chain_valid=chain_valid,
        last_updated=datetime(2026, 2, 27, 12, 0, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def console() -> Console:
    return Console(record=True, width=140)


@pytest.fixture
def renderer(console: Console) -> MonitorRenderer:
    return MonitorRenderer(console=console)


# ---------------------------------------------------------------------------
# Test: Colour maps
# ---------------------------------------------------------------------------


class TestStateMappings:
    def test_all_stage_states_styled(self):
        for state in StageState:
            assert state in _STATE_STYLES, f"Missing style for {state}"
            assert state in _STATE_LABELS, f"Missing label for {state}"

    def test_all_run_statuses_styled(self):
        assert set(_RUN_STYLES) == set(RunStatus)

    def test_all_task_health_values_styled(self):
        assert set(_HEALTH_STYLES) == set(TaskHealth)


# ---------------------------------------------------------------------------
# Test: Rendering
# ---------------------------------------------------------------------------


class TestRenderSnapshot:
    def test_returns_panel(self, renderer: MonitorRenderer):
        assert isinstance(renderer.render_snapshot(_make_snapshot()), Panel)

    def test_output_contains_stages_and_status(self, renderer: MonitorRenderer, console: Console):
        renderer.print_snapshot(_make_snapshot())
        text = console.export_text()
        assert "Convoy Pipeline" in text
        assert "Vulnerability Gate" in text
        assert "BLOCKED" in text
        assert "FAILED" in text
        assert "run-test-001" in text
        assert "valid" in text

    def test_broken_chain_flagged(self, renderer: MonitorRenderer, console: Console):
        renderer.print_snapshot(_make_snapshot(chain_valid=False))
        assert "BROKEN" in console.export_text()

    def test_unknown_status(self, renderer: MonitorRenderer, console: Console):
        renderer.print_snapshot(_make_snapshot(status=None))
        assert "unknown" in console.export_text()


class TestRenderTables:
    def test_runs_table(self, renderer: MonitorRenderer, console: Console):
        table = renderer.render_runs([_make_snapshot()])
        assert isinstance(table, Table)
        assert table.row_count == 1
        console.print(table)
        text = console.export_text()
        assert "Pipeline runs" in text
        assert "failed" in text

    def test_service_table(self, renderer: MonitorRenderer, console: Console):
        state = ServiceState(
            service_id="web",
            current_revision="r-1a2b3c4d5e6f",
            steady_state=True,
            tasks=(
                Task(task_id="task-0001", revision="r-1a2b3c4d5e6f", health=TaskHealth.HEALTHY),
                Task(task_id="task-0002", revision="r-1a2b3c4d5e6f", health=TaskHealth.DRAINING),
            ),
        )
        console.print(renderer.render_service(state))
        text = console.export_text()
        assert "task-0002" in text
        assert "DRAINING" in text
        assert "steady" in text

    def test_scaling_table(self, renderer: MonitorRenderer, console: Console):
        events = [
            ScalingEvent(
                service_id="web",
                action=ScalingAction.SCALE_OUT,
                observed=95.0,
                desired_before=2,
                desired_after=3,
                reason="above target",
            ),
            ScalingEvent(
                service_id="web",
                action=ScalingAction.NO_METRIC,
                desired_before=3,
                desired_after=3,
                reason="no datapoint",
                clamped=True,
            ),
        ]
        console.print(renderer.render_scaling(events))
        text = console.export_text()
        assert "Autoscaling" in text
        assert "2 -> 3" in text
        assert "clamped" in text
        assert "no datapoint" in text


class TestChainVerification:
    def test_valid(self, renderer: MonitorRenderer, console: Console):
        renderer.print_chain_verification("run-1", True)
        assert "Hash chain for run run-1 is valid." in console.export_text()

    def test_broken(self, renderer: MonitorRenderer, console: Console):
        renderer.print_chain_verification("run-1", False)
        assert "BROKEN" in console.export_text()
