"""Convoy data models (Pydantic v2)."""

from convoy.models.artifacts import ImageArtifact, PublishedRef
from convoy.models.config import BoundsConfig, HealthCheck, RetryPolicy
from convoy.models.ledger import LedgerEntry
from convoy.models.network import Direction, PortRange, Protocol, SecurityRule
from convoy.models.pipeline import PipelineRun, RunStatus, StageRecord, TriggerEvent
from convoy.models.reports import Finding, GateDecision, GateVerdict, ScanReport, Severity
from convoy.models.service import (
    ContainerSpec,
    RolloutResult,
    RolloutState,
    ScalingAction,
    ScalingEvent,
    ScalingPolicy,
    ServiceSpec,
    ServiceState,
    Task,
    TaskHealth,
)
from convoy.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    VALID_TRANSITIONS,
    StageDefinition,
    StageState,
)

__all__ = [
    # artifacts
    "ImageArtifact",
    "PublishedRef",
    # config
    "BoundsConfig",
    "HealthCheck",
    "RetryPolicy",
    # ledger
    "LedgerEntry",
    # network
    "Direction",
    "PortRange",
    "Protocol",
    "SecurityRule",
    # pipeline
    "PipelineRun",
    "RunStatus",
    "StageRecord",
    "TriggerEvent",
    # reports
    "Finding",
    "GateDecision",
    "GateVerdict",
    "ScanReport",
    "Severity",
    # service
    "ContainerSpec",
    "RolloutResult",
    "RolloutState",
    "ScalingAction",
    "ScalingEvent",
    "ScalingPolicy",
    "ServiceSpec",
    "ServiceState",
    "Task",
    "TaskHealth",
    # stages
    "StageState",
    "StageDefinition",
    "VALID_TRANSITIONS",
    "DEFAULT_STAGE_DEFINITIONS",
]
