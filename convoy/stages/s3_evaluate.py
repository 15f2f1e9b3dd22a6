"""Stage 3: vulnerability gate (mandatory).

Evaluates the scan report against the configured severity threshold.  A
FAIL raises ``PolicyBlocked``; the run fails and the image is never
published.
"""

from __future__ import annotations

from typing import Any, ClassVar

from convoy.core.vulnerability_gate import VulnerabilityGate, require_pass
from convoy.models.reports import Severity
from convoy.models.stages import STAGE_EVALUATE
from convoy.stages.base import BaseStage


class EvaluateGateStage(BaseStage):
    stage_id: ClassVar[str] = STAGE_EVALUATE
    display_name: ClassVar[str] = "Vulnerability Gate"
    is_gate: ClassVar[bool] = True

    def __init__(self, gate: VulnerabilityGate, threshold: Severity | None = None) -> None:
        self._gate = gate
        self._threshold = threshold

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        decision = self._gate.evaluate(run_context["scan_report"], self._threshold)
        run_context["gate_decision"] = decision
        require_pass(decision)
        return {
            "verdict": decision.verdict.value,
            "threshold": decision.threshold.value,
            "artifact_digest": decision.artifact_digest,
        }
