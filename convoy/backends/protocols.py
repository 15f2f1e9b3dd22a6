"""Capability protocols for the external collaborators.

Each consumer is typed against the narrowest protocol that covers the
operations it is permitted to perform: the publisher can push and query the
registry but never touch the platform, the autoscaler can read metrics but
never start tasks, and so on.  Any object with matching methods satisfies a
protocol; the simulated backends in this package are one such set.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from convoy.models.artifacts import ImageArtifact
    from convoy.models.config import HealthCheck
    from convoy.models.network import SecurityRule
    from convoy.models.pipeline import TriggerEvent
    from convoy.models.reports import ScanReport
    from convoy.models.service import ContainerSpec, ServiceSpec, ServiceState


@runtime_checkable
class ImageBuilder(Protocol):
    """Produces a versioned image from source.  Raises ``BuildFailed``."""

    def build(self, trigger: TriggerEvent) -> ImageArtifact: ...


@runtime_checkable
class ScannerClient(Protocol):
    """Vulnerability scanner.  Raises ``ScanUnavailable`` when unreachable."""

    def scan(self, image_ref: str) -> ScanReport: ...


@runtime_checkable
class RegistryClient(Protocol):
    """Content-addressed image registry.

    ``push`` raises ``PushRejected`` for auth/quota refusals and
    ``NetworkError`` for transient transport failures.  ``resolve`` returns
    the digest a tag points at, or None.
    """

    def push(self, repository: str, tag: str, digest: str, blob: bytes) -> str: ...

    def exists(self, digest: str) -> bool: ...

    def resolve(self, repository: str, tag: str) -> str | None: ...


@runtime_checkable
class PlatformClient(Protocol):
    """Orchestration platform.  Polled, never pushed."""

    def update_service_spec(self, service_id: str, spec: ServiceSpec) -> bool: ...

    def describe_service(self, service_id: str) -> ServiceState: ...

    def start_task(self, service_id: str, container: ContainerSpec, revision: str) -> str: ...

    def stop_task(self, task_id: str) -> None: ...


@runtime_checkable
class HealthProbe(Protocol):
    """Load balancer health endpoint: one probe of one task."""

    def probe(self, task_id: str, check: HealthCheck) -> bool: ...


@runtime_checkable
class MetricSource(Protocol):
    """Pollable metric feed.  Returns None when no datapoint is available."""

    def read(self, service_id: str, metric_type: str) -> float | None: ...


@runtime_checkable
class FirewallClient(Protocol):
    """Security-group backend.  ``replace_rules`` swaps the whole set at once."""

    def replace_rules(self, group_id: str, rules: tuple[SecurityRule, ...]) -> None: ...
