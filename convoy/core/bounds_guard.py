"""Start-up guard for the bounds configuration.

Runs once before any controller is built and fails hard with a single
``BoundsConfigError`` listing every violated constraint, so an operator can
fix the whole configuration in one pass.
"""

from __future__ import annotations

import logging
import math

from convoy.config import ConvoySettings
from convoy.errors import BoundsConfigError
from convoy.models.reports import Severity

logger = logging.getLogger(__name__)


def collect_bounds_violations(config: ConvoySettings) -> list[str]:
    """Return a description of every violated constraint; empty means valid."""
    violations: list[str] = []

    if config.min_capacity < 0:
        violations.append(f"min_capacity={config.min_capacity} must be >= 0.")
    if config.min_capacity > config.max_capacity:
        violations.append(
            f"min_capacity={config.min_capacity} exceeds max_capacity={config.max_capacity}."
        )
    if config.target_metric_value <= 0:
        violations.append(f"target_metric_value={config.target_metric_value} must be > 0.")
    if not 0 <= config.min_healthy_percent <= 100:
        violations.append(
            f"min_healthy_percent={config.min_healthy_percent} must be within [0, 100]."
        )
    if config.max_surge_percent < 100:
        violations.append(f"max_surge_percent={config.max_surge_percent} must be >= 100.")
    if config.cooldown_seconds < 0:
        violations.append(f"cooldown_seconds={config.cooldown_seconds} must be >= 0.")
    if not isinstance(config.scan_severity_threshold, Severity):
        violations.append(
            f"scan_severity_threshold={config.scan_severity_threshold!r} is not one of "
            f"{', '.join(s.value for s in Severity)}."
        )
    if not 0 <= config.scale_dead_band < 1:
        violations.append(f"scale_dead_band={config.scale_dead_band} must be within [0, 1).")
    if config.scale_step < 1:
        violations.append(f"scale_step={config.scale_step} must be >= 1.")
    if config.healthy_threshold < 1 or config.unhealthy_threshold < 1:
        violations.append("healthy_threshold and unhealthy_threshold must be >= 1.")
    if config.history_limit < 1:
        violations.append(f"history_limit={config.history_limit} must be >= 1.")

    # Every desired count the autoscaler can choose must leave rollout headroom.
    for desired in range(max(config.min_capacity, 1), config.max_capacity + 1):
        min_healthy = math.ceil(desired * config.min_healthy_percent / 100)
        max_total = math.floor(desired * config.max_surge_percent / 100)
        if max_total <= min_healthy:
            violations.append(
                f"desired_count={desired} leaves no rollout headroom "
                f"(max_total={max_total}, min_healthy={min_healthy}); "
                f"raise max_surge_percent or lower min_healthy_percent."
            )
            break

    if config.is_production and config.debug:
        violations.append("debug=True is not allowed in production. Set CONVOY_DEBUG=false.")

    return violations


def enforce_bounds_constraints(config: ConvoySettings) -> None:
    """Raise ``BoundsConfigError`` if the configuration cannot run safely."""
    violations = collect_bounds_violations(config)
    if violations:
        msg = "Bounds configuration guard failed.\n" + "\n".join(f"  - {v}" for v in violations)
        logger.critical(msg)
        raise BoundsConfigError(msg)
    logger.debug("Bounds configuration guard passed.")
