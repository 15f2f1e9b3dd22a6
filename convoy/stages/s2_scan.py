"""Stage 2: vulnerability scan."""

from __future__ import annotations

from typing import Any, ClassVar

from convoy.core.vulnerability_gate import VulnerabilityGate
from convoy.models.stages import STAGE_SCAN
from convoy.stages.base import BaseStage


class ScanStage(BaseStage):
    stage_id: ClassVar[str] = STAGE_SCAN
    display_name: ClassVar[str] = "Vulnerability Scan"

    def __init__(self, gate: VulnerabilityGate) -> None:
        self._gate = gate

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        report = self._gate.scan(run_context["artifact"])
        run_context["scan_report"] = report
        return {
            "artifact_digest": report.artifact_digest,
            "scanner": report.scanner,
            "findings": report.count_by_severity(),
        }
