"""Configuration value models shared by the pipeline and the controllers."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from convoy.models.reports import Severity


class BoundsConfig(BaseModel):
    """The bounds options recognised from external configuration."""

    model_config = ConfigDict(frozen=True)

    min_capacity: int = 1
    max_capacity: int = 4
    target_metric_value: float = 75.0
    min_healthy_percent: int = 100
    max_surge_percent: int = 200
    cooldown_seconds: float = 300.0
    scan_severity_threshold: Severity = Severity.CRITICAL


class HealthCheck(BaseModel):
    """Load balancer health-check parameters used by task health evaluation.

    The load balancer owns the probe endpoint; Convoy only configures the
    path, interval, and the consecutive success/failure thresholds.
    """

    model_config = ConfigDict(frozen=True)

    path: str = "/health"
    port: int = 8080
    interval_seconds: float = 10.0
    timeout_seconds: float = 5.0
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient external failures."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
