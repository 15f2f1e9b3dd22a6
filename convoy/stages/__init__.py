"""Convoy pipeline stages, one module per stage.

Stages take their collaborators in the constructor, so the registry below
maps stage ids to classes; ``PipelineOrchestrator`` builds the instances.
"""

from __future__ import annotations

from convoy.stages.base import BaseStage, StageExecutionError
from convoy.stages.s0_trigger import TriggerIntakeStage
from convoy.stages.s1_build import BuildStage
from convoy.stages.s2_scan import ScanStage
from convoy.stages.s3_evaluate import EvaluateGateStage
from convoy.stages.s4_publish import PublishStage
from convoy.stages.s5_rollout import RolloutStage

STAGE_REGISTRY: dict[str, type[BaseStage]] = {
    cls.stage_id: cls
    for cls in (
        TriggerIntakeStage,
        BuildStage,
        ScanStage,
        EvaluateGateStage,
        PublishStage,
        RolloutStage,
    )
}

STAGE_ORDER: list[str] = list(STAGE_REGISTRY)

GATE_STAGE_IDS: frozenset[str] = frozenset(
    sid for sid, cls in STAGE_REGISTRY.items() if cls.is_gate
)

__all__ = [
    "BaseStage",
    "StageExecutionError",
    "STAGE_REGISTRY",
    "STAGE_ORDER",
    "GATE_STAGE_IDS",
    "TriggerIntakeStage",
    "BuildStage",
    "ScanStage",
    "EvaluateGateStage",
    "PublishStage",
    "RolloutStage",
]
