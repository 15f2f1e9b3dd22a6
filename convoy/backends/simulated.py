"""In-process stand-ins for the external collaborators.

These back the ``convoy demo`` command and the test-suite.  Each class
satisfies exactly one capability protocol (``SimulatedPlatform`` satisfies
two: it is both the orchestration platform and the load balancer's health
endpoint for the tasks it runs).  Failure behaviour is scripted so that the
retry, rollback, and hold paths can be driven deterministically.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

from convoy.core.hasher import blob_digest, canonical_json_bytes
from convoy.errors import BuildFailed, ConvoyError, NetworkError, ScanUnavailable
from convoy.models.artifacts import ImageArtifact
from convoy.models.config import HealthCheck
from convoy.models.network import SecurityRule
from convoy.models.pipeline import TriggerEvent
from convoy.models.reports import Finding, ScanReport
from convoy.models.service import ContainerSpec, ServiceSpec, ServiceState, Task, TaskHealth

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Image builder
# ---------------------------------------------------------------------------


class ScriptedBuilder:
    """Builds a deterministic image blob from the trigger.

    The same (repository, revision) always yields the same digest, so a
    re-run of an already-published revision exercises the publisher's
    idempotent path.
    """

    def __init__(
        self,
        repository: str = "registry.local/app",
        *,
        fail_revisions: Iterable[str] = (),
    ) -> None:
        self.repository = repository
        self.fail_revisions = set(fail_revisions)
        self.builds: list[str] = []

    @staticmethod
    def _blob(trigger: TriggerEvent) -> bytes:
        return canonical_json_bytes(
            {
                "source": trigger.repository,
                "revision": trigger.revision,
                "service": trigger.service_id,
            }
        )

    def image_ref_for(self, trigger: TriggerEvent) -> str:
        """The reference ``build(trigger)`` will produce, without building."""
        return f"{self.repository}@{blob_digest(self._blob(trigger))}"

    def build(self, trigger: TriggerEvent) -> ImageArtifact:
        if trigger.revision in self.fail_revisions:
            raise BuildFailed(f"Build of {trigger.repository}@{trigger.revision} failed")

        blob = self._blob(trigger)
        self.builds.append(trigger.revision)
        return ImageArtifact(
            repository=self.repository,
            tag=trigger.revision,
            digest=blob_digest(blob),
            build_metadata={
                "source": trigger.repository,
                "revision": trigger.revision,
                "built_at": datetime.now(timezone.utc).isoformat(),
            },
            blob=blob,
        )


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


class StaticScanner:
    """Returns canned findings.

    Parameters
    ----------
    findings:
        Findings reported for every image unless *per_digest* overrides.
    per_digest:
        Findings keyed by image digest.
    unavailable_attempts:
        Number of leading ``scan`` calls that raise ``ScanUnavailable``.
    """

    def __init__(
        self,
        findings: Sequence[Finding] = (),
        *,
        per_digest: dict[str, Sequence[Finding]] | None = None,
        unavailable_attempts: int = 0,
    ) -> None:
        self.findings = tuple(findings)
        self.per_digest = {k: tuple(v) for k, v in (per_digest or {}).items()}
        self.unavailable_attempts = unavailable_attempts
        self.calls = 0

    def scan(self, image_ref: str) -> ScanReport:
        self.calls += 1
        if self.unavailable_attempts > 0:
            self.unavailable_attempts -= 1
            raise ScanUnavailable(f"scanner unreachable while scanning {image_ref}")

        digest = image_ref.rpartition("@")[2]
        return ScanReport(
            artifact_digest=digest,
            findings=self.per_digest.get(digest, self.findings),
            scanner="static",
        )


# ---------------------------------------------------------------------------
# Orchestration platform + health endpoint
# ---------------------------------------------------------------------------


class SimulatedPlatform:
    """In-memory task scheduler.

    Tasks started through ``start_task`` report STARTING; tasks placed by
    ``seed`` report HEALTHY, standing in for a fleet that was already serving
    before the controller attached.  Probe results come from scripts keyed by
    spec revision or by image reference: a bool, or a sequence consumed one
    element per probe of each task (the last element repeats once the
    sequence runs out).  Unscripted tasks always pass.
    """

    def __init__(self, probe_scripts: dict[str, bool | Sequence[bool]] | None = None) -> None:
        self.probe_scripts: dict[str, bool | Sequence[bool]] = dict(probe_scripts or {})
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._tasks: dict[str, dict[str, Task]] = {}
        self._task_service: dict[str, str] = {}
        self._task_images: dict[str, str] = {}
        self._probe_counts: dict[str, int] = {}
        self.specs: dict[str, ServiceSpec] = {}
        self.accept_specs = True
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.peak_running: dict[str, int] = {}

    def _next_task_id(self) -> str:
        return f"task-{next(self._ids):04d}"

    def _note_running(self, service_id: str) -> None:
        running = len(self._tasks.get(service_id, {}))
        self.peak_running[service_id] = max(self.peak_running.get(service_id, 0), running)

    def seed(self, service_id: str, container: ContainerSpec, count: int) -> list[str]:
        """Place *count* already-healthy tasks of *container*."""
        ids = []
        with self._lock:
            tasks = self._tasks.setdefault(service_id, {})
            for _ in range(count):
                task_id = self._next_task_id()
                tasks[task_id] = Task(
                    task_id=task_id, revision=container.revision, health=TaskHealth.HEALTHY
                )
                self._task_service[task_id] = service_id
                self._task_images[task_id] = container.image_ref
                ids.append(task_id)
            self._note_running(service_id)
        return ids

    def set_health(self, task_id: str, health: TaskHealth) -> None:
        """Change the health the platform reports for a running task."""
        with self._lock:
            service_id = self._task_service[task_id]
            task = self._tasks[service_id][task_id]
            self._tasks[service_id][task_id] = task.model_copy(update={"health": health})

    # PlatformClient ----------------------------------------------------

    def update_service_spec(self, service_id: str, spec: ServiceSpec) -> bool:
        if not self.accept_specs:
            return False
        with self._lock:
            self.specs[service_id] = spec
        return True

    def describe_service(self, service_id: str) -> ServiceState:
        with self._lock:
            tasks = tuple(self._tasks.get(service_id, {}).values())
            spec = self.specs.get(service_id)
        return ServiceState(
            service_id=service_id,
            tasks=tasks,
            current_revision=spec.revision if spec else "",
        )

    def start_task(self, service_id: str, container: ContainerSpec, revision: str) -> str:
        with self._lock:
            task_id = self._next_task_id()
            self._tasks.setdefault(service_id, {})[task_id] = Task(
                task_id=task_id, revision=revision
            )
            self._task_service[task_id] = service_id
            self._task_images[task_id] = container.image_ref
            self.started.append(task_id)
            self._note_running(service_id)
        logger.debug("Started %s (%s) for %s", task_id, revision, service_id)
        return task_id

    def stop_task(self, task_id: str) -> None:
        with self._lock:
            service_id = self._task_service.get(task_id)
            if service_id is None or task_id not in self._tasks.get(service_id, {}):
                return
            del self._tasks[service_id][task_id]
            del self._task_service[task_id]
            self._task_images.pop(task_id, None)
            self._probe_counts.pop(task_id, None)
            self.stopped.append(task_id)
        logger.debug("Stopped %s", task_id)

    # HealthProbe -------------------------------------------------------

    def probe(self, task_id: str, check: HealthCheck) -> bool:
        with self._lock:
            service_id = self._task_service.get(task_id)
            task = self._tasks.get(service_id or "", {}).get(task_id)
            if task is None:
                return False
            script = self.probe_scripts.get(task.revision)
            if script is None:
                script = self.probe_scripts.get(self._task_images.get(task_id, ""), True)
            n = self._probe_counts.get(task_id, 0)
            self._probe_counts[task_id] = n + 1
        if isinstance(script, bool):
            return script
        if not script:
            return True
        return bool(script[min(n, len(script) - 1)])


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class SyntheticMetricFeed:
    """Pollable metric source driven by a queued series.

    Each ``read`` consumes the next queued value; once the queue is empty the
    last value keeps being returned.  Queued exceptions are raised in turn,
    which is how read failures are simulated.
    """

    def __init__(self, series: Iterable[float | None | Exception] = ()) -> None:
        self._queue: deque[float | None | Exception] = deque(series)
        self._last: float | None = None
        self._lock = threading.Lock()
        self.reads = 0

    def push(self, *values: float | None | Exception) -> None:
        with self._lock:
            self._queue.extend(values)

    def read(self, service_id: str, metric_type: str) -> float | None:
        with self._lock:
            self.reads += 1
            if self._queue:
                item = self._queue.popleft()
                if isinstance(item, Exception):
                    raise item
                self._last = item
            return self._last


# ---------------------------------------------------------------------------
# Firewall
# ---------------------------------------------------------------------------


class InMemoryFirewall:
    """Security-group backend holding one rule tuple per group."""

    def __init__(self) -> None:
        self.groups: dict[str, tuple[SecurityRule, ...]] = {}
        self.fail_next: ConvoyError | None = None
        self.calls = 0

    def replace_rules(self, group_id: str, rules: tuple[SecurityRule, ...]) -> None:
        self.calls += 1
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        self.groups[group_id] = tuple(rules)


class FlakyRegistry:
    """Wraps a registry and fails the first *failures* pushes with *error*."""

    def __init__(self, inner, *, failures: int = 0, error: type[ConvoyError] = NetworkError) -> None:
        self._inner = inner
        self.failures = failures
        self.error = error
        self.push_calls = 0

    def push(self, repository: str, tag: str, digest: str, blob: bytes) -> str:
        self.push_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error(f"push of {repository}:{tag} failed")
        return self._inner.push(repository, tag, digest, blob)

    def exists(self, digest: str) -> bool:
        return self._inner.exists(digest)

    def resolve(self, repository: str, tag: str) -> str | None:
        return self._inner.resolve(repository, tag)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class SimulatedClock:
    """Monotonic clock that only moves when told to.

    Pass the instance as ``clock`` and its ``sleep`` method as ``sleep`` to
    run rollouts, cooldowns and backoff without waiting.
    """

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    advance = sleep
