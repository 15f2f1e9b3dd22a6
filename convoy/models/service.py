"""Service models: desired spec, observed state and scaling policy.

``ServiceSpec`` is the *desired* state: it changes only through an explicit
deploy request or an autoscaling action, both routed through the
``ServiceSpecStore``.  ``ServiceState`` is the *actual* state reported by the
orchestration platform and overlaid with the rollout controller's health
tracking.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from convoy.core.hasher import content_address


class TaskHealth(str, Enum):
    """Lifecycle of a single running task."""

    STARTING = "STARTING"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    DRAINING = "DRAINING"
    STOPPED = "STOPPED"


class ContainerSpec(BaseModel):
    """What a task runs.  Its content hash is the service revision."""

    model_config = ConfigDict(frozen=True)

    image_ref: str  # digest-pinned: "<repository>@sha256:<hex>"
    port: int = 8080
    cpu_units: int = 256
    memory_mb: int = 512

    @property
    def revision(self) -> str:
        """Short content hash identifying this container spec."""
        return content_address(self.model_dump(mode="json")).removeprefix("sha256:")[:12]


class ServiceSpec(BaseModel):
    """Desired state for one service."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    desired_count: int = Field(ge=0)
    container: ContainerSpec
    min_healthy_percent: int = Field(default=100, ge=0, le=100)
    max_surge_percent: int = Field(default=200, ge=100)
    generation: int = 0

    @model_validator(mode="after")
    def _check_headroom(self) -> ServiceSpec:
        if self.desired_count == 0:
            return self
        if self.max_total < self.desired_count:
            raise ValueError(
                f"max_surge_percent={self.max_surge_percent} allows only "
                f"{self.max_total} tasks for desired_count={self.desired_count}"
            )
        if self.max_total <= self.min_healthy:
            raise ValueError(
                f"No rollout headroom: max_total={self.max_total} <= "
                f"min_healthy={self.min_healthy} for desired_count={self.desired_count}"
            )
        return self

    @property
    def revision(self) -> str:
        return self.container.revision

    @property
    def min_healthy(self) -> int:
        """Lowest healthy task count a rollout may pass through."""
        return math.ceil(self.desired_count * self.min_healthy_percent / 100)

    @property
    def max_total(self) -> int:
        """Highest running task count a rollout may reach."""
        return math.floor(self.desired_count * self.max_surge_percent / 100)


class Task(BaseModel):
    """One running (or recently stopped) task as seen by the controller."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    revision: str
    health: TaskHealth = TaskHealth.STARTING
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ServiceState(BaseModel):
    """Actual state of one service."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    tasks: tuple[Task, ...] = ()
    current_revision: str = ""
    steady_state: bool = False

    @property
    def running_tasks(self) -> list[Task]:
        """Tasks still consuming capacity (everything but STOPPED)."""
        return [t for t in self.tasks if t.health != TaskHealth.STOPPED]

    @property
    def healthy_count(self) -> int:
        return sum(1 for t in self.tasks if t.health == TaskHealth.HEALTHY)

    @property
    def running_count(self) -> int:
        return len(self.running_tasks)


class RolloutState(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    STEADY_STATE = "STEADY_STATE"
    ROLLED_BACK = "ROLLED_BACK"


class RolloutResult(BaseModel):
    """Summary of one deploy driven by the rollout controller."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    from_revision: str
    to_revision: str
    state: RolloutState
    ticks: int = 0
    failed_new_tasks: int = 0
    reason: str = ""


class ScalingPolicy(BaseModel):
    """Target-tracking policy bounding the autoscaler."""

    model_config = ConfigDict(frozen=True)

    metric_type: str = "cpu_utilization"
    target_value: float = Field(default=75.0, gt=0)
    min_capacity: int = Field(default=1, ge=0)
    max_capacity: int = Field(default=4, ge=0)
    cooldown_seconds: float = Field(default=300.0, ge=0)
    dead_band: float = Field(default=0.1, ge=0, lt=1)
    step: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> ScalingPolicy:
        if self.min_capacity > self.max_capacity:
            raise ValueError(
                f"min_capacity={self.min_capacity} > max_capacity={self.max_capacity}"
            )
        return self

    def clamp(self, desired: int) -> int:
        return max(self.min_capacity, min(self.max_capacity, desired))


class ScalingAction(str, Enum):
    SCALE_OUT = "scale_out"
    SCALE_IN = "scale_in"
    HOLD = "hold"
    COOLDOWN = "cooldown"
    NO_METRIC = "no_metric"


class ScalingEvent(BaseModel):
    """One autoscaler tick, recorded whether or not it changed anything."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    action: ScalingAction
    reason: str = ""
    observed: float | None = None
    error_ratio: float | None = None
    desired_before: int
    desired_after: int
    clamped: bool = False
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
