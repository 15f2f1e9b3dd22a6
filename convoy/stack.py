"""Wiring for one service: pipeline, rollout, autoscaling and network policy.

``ServiceStack`` builds every component for a single service against one set
of backends and exposes them as attributes.  ``ServiceStack.simulated``
assembles the in-process backends used by ``convoy demo`` and the tests.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path

from convoy.backends.local_registry import LocalRegistry
from convoy.backends.protocols import (
    FirewallClient,
    HealthProbe,
    ImageBuilder,
    MetricSource,
    PlatformClient,
    RegistryClient,
    ScannerClient,
)
from convoy.backends.simulated import (
    InMemoryFirewall,
    ScriptedBuilder,
    SimulatedPlatform,
    StaticScanner,
    SyntheticMetricFeed,
)
from convoy.config import ConvoySettings, settings as default_settings
from convoy.core.autoscaler import Autoscaler
from convoy.core.bounds_guard import enforce_bounds_constraints
from convoy.core.desired_state import ServiceSpecStore
from convoy.core.network_policy import NetworkPolicyEnforcer
from convoy.core.orchestrator import PipelineOrchestrator
from convoy.core.publisher import RegistryPublisher
from convoy.core.rollout import RolloutController
from convoy.core.run_ledger import RunLedger
from convoy.core.vulnerability_gate import VulnerabilityGate
from convoy.models.service import ContainerSpec, ServiceSpec
from convoy.stages import (
    BuildStage,
    EvaluateGateStage,
    PublishStage,
    RolloutStage,
    ScanStage,
    TriggerIntakeStage,
)


class ServiceStack:
    """All controllers for one service, sharing one spec store and platform.

    Parameters
    ----------
    service_id:
        The service being managed.
    initial_container:
        Container the service is registered with; also the rollback target
        of the first deploy.
    config:
        Settings to build from; validated by the bounds guard first.
    clock, sleep:
        Time source for the rollout controller and autoscaler.
    backoff_sleep:
        Sleep used between scanner and registry retries.
    """

    def __init__(
        self,
        service_id: str,
        initial_container: ContainerSpec,
        *,
        builder: ImageBuilder,
        scanner: ScannerClient,
        registry: RegistryClient,
        platform: PlatformClient,
        probe: HealthProbe,
        metrics: MetricSource,
        firewall: FirewallClient,
        ledger: RunLedger,
        config: ConvoySettings | None = None,
        desired_count: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        backoff_sleep: Callable[[float], None] | None = None,
    ) -> None:
        cfg = config or default_settings
        enforce_bounds_constraints(cfg)

        self.service_id = service_id
        self.config = cfg
        self.ledger = ledger
        self.platform = platform

        self.store = ServiceSpecStore(
            platform, call_timeout=cfg.call_timeout_seconds, history_limit=cfg.history_limit
        )
        self.store.register(
            ServiceSpec(
                service_id=service_id,
                desired_count=cfg.min_capacity if desired_count is None else desired_count,
                container=initial_container,
                min_healthy_percent=cfg.min_healthy_percent,
                max_surge_percent=cfg.max_surge_percent,
            )
        )

        self.gate = VulnerabilityGate(
            scanner,
            threshold=cfg.scan_severity_threshold,
            retry=cfg.scan_retry(),
            call_timeout=cfg.call_timeout_seconds,
            sleep=backoff_sleep,
        )
        self.publisher = RegistryPublisher(
            registry,
            retry=cfg.publish_retry(),
            call_timeout=cfg.call_timeout_seconds,
            sleep=backoff_sleep,
        )
        self.rollout = RolloutController(
            self.store,
            platform,
            probe,
            service_id=service_id,
            health_check=cfg.health_check(),
            retry_budget=cfg.rollout_retry_budget,
            timeout_seconds=cfg.rollout_timeout_seconds,
            poll_interval_seconds=cfg.rollout_poll_interval_seconds,
            drain_grace_seconds=cfg.drain_grace_seconds,
            call_timeout=cfg.call_timeout_seconds,
            clock=clock,
            sleep=sleep,
            history_limit=cfg.history_limit,
        )
        self.autoscaler = Autoscaler(
            self.store,
            metrics,
            service_id=service_id,
            policy=cfg.scaling_policy(),
            interval_seconds=cfg.autoscale_interval_seconds,
            call_timeout=cfg.call_timeout_seconds,
            clock=clock,
            history_limit=cfg.history_limit,
        )
        self.network = NetworkPolicyEnforcer(
            firewall,
            group_id=f"{service_id}-sg",
            application_port=cfg.application_port,
            call_timeout=cfg.call_timeout_seconds,
        )
        self.orchestrator = PipelineOrchestrator(
            service_id,
            [
                TriggerIntakeStage(),
                BuildStage(builder, call_timeout=cfg.call_timeout_seconds),
                ScanStage(self.gate),
                EvaluateGateStage(self.gate, cfg.scan_severity_threshold),
                PublishStage(self.publisher),
                RolloutStage(self.rollout, self.store),
            ],
            ledger,
            history_limit=cfg.history_limit,
        )

    @classmethod
    def simulated(
        cls,
        service_id: str,
        base_dir: Path,
        *,
        config: ConvoySettings | None = None,
        builder: ScriptedBuilder | None = None,
        scanner: StaticScanner | None = None,
        platform: SimulatedPlatform | None = None,
        metrics: SyntheticMetricFeed | None = None,
        desired_count: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        backoff_sleep: Callable[[float], None] | None = None,
    ) -> ServiceStack:
        """Build a stack on the simulated backends with an already-serving fleet."""
        base_dir = Path(base_dir)
        builder = builder or ScriptedBuilder()
        platform = platform or SimulatedPlatform()
        cfg = config or default_settings
        initial = ContainerSpec(
            image_ref=f"{builder.repository}@sha256:{'0' * 64}",
            port=cfg.application_port,
        )
        count = cfg.min_capacity if desired_count is None else desired_count
        platform.seed(service_id, initial, count)

        return cls(
            service_id,
            initial,
            builder=builder,
            scanner=scanner or StaticScanner(),
            registry=LocalRegistry(base_dir / "registry"),
            platform=platform,
            probe=platform,
            metrics=metrics or SyntheticMetricFeed(),
            firewall=InMemoryFirewall(),
            ledger=RunLedger(base_dir / "ledger.db"),
            config=cfg,
            desired_count=count,
            clock=clock,
            sleep=sleep,
            backoff_sleep=backoff_sleep,
        )

    def start_loops(self, stop_event: threading.Event) -> list[threading.Thread]:
        """Start the rollout, autoscaling and pipeline loops as daemon threads."""
        threads = [
            threading.Thread(
                target=self.rollout.run, args=(stop_event,), name=f"{self.service_id}-rollout"
            ),
            threading.Thread(
                target=self.autoscaler.run, args=(stop_event,), name=f"{self.service_id}-autoscaler"
            ),
            threading.Thread(
                target=self.orchestrator.serve, args=(stop_event,), name=f"{self.service_id}-pipeline"
            ),
        ]
        for thread in threads:
            thread.daemon = True
            thread.start()
        return threads
