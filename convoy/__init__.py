"""Convoy: gated container release pipeline with rollout and autoscaling control.

  - Build -> Scan -> Gate -> Publish -> Rollout, fail-fast, one run per service
  - Digest-addressed, idempotent publishing with SemVer and ``latest`` tags
  - Rolling updates bounded by min-healthy / max-surge with automatic rollback
  - Target-tracking autoscaler with cooldown and hard capacity bounds
  - Security-group enforcement that never exposes the application port publicly
  - Hash-chained SQLite audit ledger and a Rich terminal monitor
"""

__version__ = "0.1.0"
__description__ = "Gated container release pipeline with rollout and autoscaling control loops"

from convoy.cli.app import app as cli
from convoy.core.orchestrator import PipelineOrchestrator
from convoy.monitor.projection import MonitorProjection
from convoy.stack import ServiceStack

__all__ = ["PipelineOrchestrator", "MonitorProjection", "ServiceStack", "cli", "__version__"]
