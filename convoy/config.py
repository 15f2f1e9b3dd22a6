"""Runtime configuration: env-driven bounds plus probe and retry settings.

Centralized config using pydantic-settings.  Reads from a .env file and
CONVOY_* environment variables.  The seven bounds options recognised by
the pipeline and the control loops (``min_capacity``, ``max_capacity``,
``target_metric_value``, ``min_healthy_percent``, ``max_surge_percent``,
``cooldown_seconds``, ``scan_severity_threshold``) live here alongside the
health-check and retry parameters that the controllers consume.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from convoy.models.config import BoundsConfig, HealthCheck, RetryPolicy
from convoy.models.reports import Severity
from convoy.models.service import ScalingPolicy


class ConvoySettings(BaseSettings):
    """Convoy configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export CONVOY_ENVIRONMENT=staging
        export CONVOY_MAX_CAPACITY=8
        export CONVOY_SCAN_SEVERITY_THRESHOLD=HIGH

    Or via .env file::

        CONVOY_ENVIRONMENT=production
        CONVOY_COOLDOWN_SECONDS=120
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CONVOY_",
        env_file_encoding="utf-8",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    ledger_path: Path = Path(".convoy/ledger.db")
    registry_path: Path = Path(".convoy/registry")

    # Bounds
    min_capacity: int = 1
    max_capacity: int = 4
    target_metric_value: float = 75.0
    min_healthy_percent: int = 100
    max_surge_percent: int = 200
    cooldown_seconds: float = 300.0
    scan_severity_threshold: Severity = Severity.CRITICAL

    # Autoscaling
    metric_type: str = "cpu_utilization"
    scale_dead_band: float = 0.1
    scale_step: int = 1
    autoscale_interval_seconds: float = 60.0

    # Health checks (load balancer target group parameters)
    application_port: int = 8080
    health_check_path: str = "/health"
    health_check_interval_seconds: float = 10.0
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3

    # Rollout
    rollout_retry_budget: int = 0
    rollout_timeout_seconds: float = 600.0
    rollout_poll_interval_seconds: float = 5.0
    drain_grace_seconds: float = 30.0

    # External calls
    call_timeout_seconds: float = 30.0
    scan_max_attempts: int = 3
    publish_max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0

    # Retention of in-memory history; the ledger keeps the full record
    history_limit: int = 200

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"

    def bounds(self) -> BoundsConfig:
        """Return the externally recognised bounds options as one record."""
        return BoundsConfig(
            min_capacity=self.min_capacity,
            max_capacity=self.max_capacity,
            target_metric_value=self.target_metric_value,
            min_healthy_percent=self.min_healthy_percent,
            max_surge_percent=self.max_surge_percent,
            cooldown_seconds=self.cooldown_seconds,
            scan_severity_threshold=self.scan_severity_threshold,
        )

    def scaling_policy(self) -> ScalingPolicy:
        return ScalingPolicy(
            metric_type=self.metric_type,
            target_value=self.target_metric_value,
            min_capacity=self.min_capacity,
            max_capacity=self.max_capacity,
            cooldown_seconds=self.cooldown_seconds,
            dead_band=self.scale_dead_band,
            step=self.scale_step,
        )

    def health_check(self) -> HealthCheck:
        return HealthCheck(
            path=self.health_check_path,
            port=self.application_port,
            interval_seconds=self.health_check_interval_seconds,
            timeout_seconds=min(self.call_timeout_seconds, self.health_check_interval_seconds),
            healthy_threshold=self.healthy_threshold,
            unhealthy_threshold=self.unhealthy_threshold,
        )

    def scan_retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.scan_max_attempts,
            backoff_base_seconds=self.backoff_base_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
        )

    def publish_retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.publish_max_attempts,
            backoff_base_seconds=self.backoff_base_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
        )


# Module-level singleton; import as `from convoy.config import settings`
settings = ConvoySettings()
