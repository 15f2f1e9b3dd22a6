"""Rollout controller: converge running tasks onto the desired spec.

Each call to ``reconcile_once`` diffs the desired spec (read fresh from the
``ServiceSpecStore``) against the tasks the platform reports, and issues the
smallest set of corrective actions that keeps two bounds intact:

* running tasks (DRAINING included) never exceed ``spec.max_total``;
* healthy tasks never drop below ``spec.min_healthy`` through the
  controller's own actions.

The same loop serves deploys, autoscaling changes, and rollbacks; only the
target revision and desired count differ between them.

One tick, in order:

1. Probe STARTING tasks in parallel and update consecutive counters.  A
   task the platform itself reports UNHEALTHY or DRAINING is taken at its
   word, even if it was HEALTHY before.
2. Stop UNHEALTHY tasks.  During a deploy, too many new-revision failures
   start a rollback.  Either way the tick ends here.
3. Stop DRAINING tasks whose grace period has elapsed.
4. Remove surplus: old STARTING tasks are stopped, old HEALTHY tasks are
   drained while the bounds allow, then excess target-revision tasks go.
5. Launch target-revision tasks up to ``desired`` within the surge ceiling.
6. Report steady state when every running task is target-revision and
   HEALTHY, nothing drains, and the count equals ``desired``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from convoy.backends.protocols import HealthProbe, PlatformClient
from convoy.config import settings
from convoy.core.desired_state import ServiceSpecStore
from convoy.core.timeouts import call_with_timeout
from convoy.errors import ConvoyError, RolloutHealthTimeout
from convoy.models.config import HealthCheck
from convoy.models.service import (
    ContainerSpec,
    RolloutResult,
    RolloutState,
    ServiceSpec,
    ServiceState,
    Task,
    TaskHealth,
)

logger = logging.getLogger(__name__)

# Health states the platform can report that override probe-tracked health.
_PLATFORM_VERDICTS = frozenset({TaskHealth.UNHEALTHY, TaskHealth.DRAINING})


class _Deploy:
    """Book-keeping for the deploy currently being driven."""

    def __init__(self, previous: ServiceSpec, to_revision: str) -> None:
        self.previous = previous
        self.to_revision = to_revision
        self.failed_new = 0
        self.ticks = 0
        self.rolling_back = False
        self.reason = ""


class RolloutController:
    """Drives one service's tasks toward its desired spec.

    Parameters
    ----------
    store:
        Source of the desired spec; re-read on every tick.
    platform:
        Orchestration platform, polled through ``describe_service``.
    probe:
        Health endpoint used to promote or fail STARTING tasks.
    service_id:
        The service this controller owns.
    clock, sleep:
        Monotonic time source and sleep used by ``deploy``; injectable so
        tests can run a deploy without waiting.
    history_limit:
        Number of recent deploy outcomes kept in ``results``.

    Remaining keyword arguments default to the values in ``convoy.config``.
    """

    def __init__(
        self,
        store: ServiceSpecStore,
        platform: PlatformClient,
        probe: HealthProbe,
        *,
        service_id: str,
        health_check: HealthCheck | None = None,
        retry_budget: int | None = None,
        timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        drain_grace_seconds: float | None = None,
        call_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        max_probe_workers: int = 8,
        history_limit: int | None = None,
    ) -> None:
        self._store = store
        self._platform = platform
        self._probe = probe
        self.service_id = service_id
        self._check = health_check or settings.health_check()
        self._retry_budget = (
            settings.rollout_retry_budget if retry_budget is None else retry_budget
        )
        self._timeout = (
            settings.rollout_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self._poll_interval = (
            settings.rollout_poll_interval_seconds
            if poll_interval_seconds is None
            else poll_interval_seconds
        )
        self._drain_grace = (
            settings.drain_grace_seconds if drain_grace_seconds is None else drain_grace_seconds
        )
        self._call_timeout = call_timeout
        self._clock = clock
        self._sleep = sleep
        self._max_probe_workers = max_probe_workers

        self._lock = threading.RLock()
        self._counter_lock = threading.Lock()
        self._health: dict[str, TaskHealth] = {}
        self._successes: dict[str, int] = {}
        self._failures: dict[str, int] = {}
        self._drain_deadlines: dict[str, float] = {}
        self._deploy: _Deploy | None = None
        self.state = RolloutState.PENDING
        self.results: deque[RolloutResult] = deque(
            maxlen=settings.history_limit if history_limit is None else history_limit
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def reconcile_once(self) -> ServiceState:
        """Run one reconciliation tick and return the resulting state."""
        with self._lock:
            return self._reconcile()

    def deploy(self, container: ContainerSpec) -> RolloutResult:
        """Roll the service onto *container* and block until a terminal state.

        Returns a STEADY_STATE result, or ROLLED_BACK when new-revision tasks
        fail health checks beyond the retry budget or the rollout times out.
        """
        with self._lock:
            previous = self._store.get(self.service_id)
            if container == previous.container:
                spec = previous
            else:
                spec = self._store.apply_deploy(self.service_id, container)

            deploy = _Deploy(previous=previous, to_revision=spec.revision)
            self._deploy = deploy
            self.state = RolloutState.IN_PROGRESS
            logger.info(
                "Deploying %s: %s -> %s (desired=%d, min_healthy=%d, max_total=%d)",
                self.service_id,
                previous.revision,
                spec.revision,
                spec.desired_count,
                spec.min_healthy,
                spec.max_total,
            )

            try:
                if self._converge(deploy, rollback=False):
                    return self._finish(deploy, RolloutState.STEADY_STATE)
            except RolloutHealthTimeout as exc:
                logger.warning("%s", exc)
                self._begin_rollback(deploy, str(exc))

            reason = deploy.reason
            if not self._converge(deploy, rollback=True):
                reason = (
                    f"{reason}; previous revision not steady within "
                    f"{self._timeout:.0f}s of rollback"
                )
                logger.error("Rollback of %s incomplete: %s", self.service_id, reason)
            return self._finish(deploy, RolloutState.ROLLED_BACK, reason)

    def run(self, stop_event: threading.Event) -> None:
        """Reconcile continuously until *stop_event* is set.

        Errors are logged and the loop carries on at the next interval.
        """
        logger.info("Rollout loop for %s started", self.service_id)
        while not stop_event.is_set():
            try:
                self.reconcile_once()
            except Exception:
                logger.exception("Reconcile of %s failed", self.service_id)
            stop_event.wait(self._poll_interval)
        logger.info("Rollout loop for %s stopped", self.service_id)

    def snapshot(self) -> ServiceState:
        """Observed state with controller-tracked health, without acting."""
        with self._lock:
            spec = self._store.get(self.service_id)
            tasks = self._observe()
            return ServiceState(
                service_id=self.service_id,
                tasks=tuple(tasks),
                current_revision=spec.revision,
                steady_state=self._is_steady(spec, tasks),
            )

    # ------------------------------------------------------------------
    # Deploy driving
    # ------------------------------------------------------------------

    def _converge(self, deploy: _Deploy, *, rollback: bool) -> bool:
        """Tick until steady.  False means a rollback started or time ran out."""
        started = self._clock()
        while True:
            observed = self._reconcile()
            deploy.ticks += 1
            if deploy.rolling_back != rollback:
                return False
            if observed.steady_state:
                return True
            if self._clock() - started >= self._timeout:
                if rollback:
                    return False
                raise RolloutHealthTimeout(
                    f"{self.service_id} did not reach steady state on "
                    f"{deploy.to_revision} within {self._timeout:.0f}s"
                )
            self._sleep(self._poll_interval)

    def _begin_rollback(self, deploy: _Deploy, reason: str) -> None:
        deploy.rolling_back = True
        deploy.reason = reason
        logger.warning(
            "Rolling %s back to %s: %s", self.service_id, deploy.previous.revision, reason
        )
        self._store.apply_deploy(self.service_id, deploy.previous.container)

    def _finish(self, deploy: _Deploy, state: RolloutState, reason: str = "") -> RolloutResult:
        result = RolloutResult(
            service_id=self.service_id,
            from_revision=deploy.previous.revision,
            to_revision=deploy.to_revision,
            state=state,
            ticks=deploy.ticks,
            failed_new_tasks=deploy.failed_new,
            reason=reason,
        )
        self.state = state
        self._deploy = None
        self.results.append(result)
        logger.info(
            "Rollout of %s to %s finished %s after %d ticks",
            self.service_id,
            deploy.to_revision,
            state.value,
            deploy.ticks,
        )
        return result

    # ------------------------------------------------------------------
    # One tick
    # ------------------------------------------------------------------

    def _reconcile(self) -> ServiceState:
        spec = self._store.get(self.service_id)
        target = spec.revision
        desired = spec.desired_count

        live = self._observe()

        # 1. probe
        starting = [t for t in live if t.health == TaskHealth.STARTING]
        if starting:
            workers = min(self._max_probe_workers, len(starting))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="convoy-probe") as pool:
                list(pool.map(self._probe_task, starting))
            live = self._with_current_health(live)

        # 2. unhealthy
        unhealthy = [t for t in live if t.health == TaskHealth.UNHEALTHY]
        if unhealthy:
            for task in unhealthy:
                self._stop(task, "failed health checks")
            live = [t for t in live if t.health != TaskHealth.UNHEALTHY]
            deploy = self._deploy
            if deploy is not None and not deploy.rolling_back:
                deploy.failed_new += sum(1 for t in unhealthy if t.revision == deploy.to_revision)
                if deploy.failed_new > self._retry_budget:
                    self._begin_rollback(
                        deploy,
                        f"{deploy.failed_new} new-revision task(s) failed health checks "
                        f"(budget {self._retry_budget})",
                    )
            return self._report(spec, live)

        # 3. drained
        now = self._clock()
        for task in [t for t in live if t.health == TaskHealth.DRAINING]:
            if self._drain_deadlines.get(task.task_id, now) <= now:
                self._stop(task, "drain complete")
                live.remove(task)

        # 4. surplus
        for task in [t for t in live if t.revision != target and t.health == TaskHealth.STARTING]:
            self._stop(task, "superseded revision")
            live.remove(task)

        healthy = sum(1 for t in live if t.health == TaskHealth.HEALTHY)
        for task in self._oldest_first(
            t for t in live if t.revision != target and t.health == TaskHealth.HEALTHY
        ):
            if healthy - 1 < spec.min_healthy:
                break
            at_ceiling = len(live) >= spec.max_total and spec.min_healthy < desired
            if not (healthy > desired or at_ceiling):
                break
            live = self._drain(task, live)
            healthy -= 1

        new_starting = [t for t in live if t.revision == target and t.health == TaskHealth.STARTING]
        new_healthy = self._oldest_first(
            t for t in live if t.revision == target and t.health == TaskHealth.HEALTHY
        )
        excess = len(new_starting) + len(new_healthy) - desired
        for task in new_starting[: max(excess, 0)]:
            self._stop(task, "scale in")
            live.remove(task)
            excess -= 1
        for task in new_healthy[: max(excess, 0)]:
            live = self._drain(task, live)

        # 5. launch
        in_flight = sum(
            1
            for t in live
            if t.revision == target and t.health in (TaskHealth.STARTING, TaskHealth.HEALTHY)
        )
        launch = min(desired - in_flight, spec.max_total - len(live))
        for _ in range(max(launch, 0)):
            live.append(self._start(spec))

        # 6. steady
        return self._report(spec, live)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _observe(self) -> list[Task]:
        """Platform tasks overlaid with controller-tracked health.

        Probes decide health while the platform reports STARTING or HEALTHY.
        A platform report of UNHEALTHY or DRAINING wins over the tracked value,
        and STOPPED tasks drop out.
        """
        reported = call_with_timeout(
            self._platform.describe_service,
            self.service_id,
            timeout=self._call_timeout,
            operation="platform.describe_service",
        )
        tasks: list[Task] = []
        with self._counter_lock:
            for task in reported.tasks:
                if task.health == TaskHealth.STOPPED:
                    continue
                tracked = self._health.get(task.task_id)
                if tracked is None or (
                    task.health in _PLATFORM_VERDICTS and tracked != task.health
                ):
                    if tracked is not None:
                        logger.warning(
                            "Platform reports %s (%s) %s; was %s",
                            task.task_id,
                            task.revision,
                            task.health.value,
                            tracked.value,
                        )
                    tracked = self._health[task.task_id] = task.health
                    if tracked == TaskHealth.DRAINING:
                        self._drain_deadlines.setdefault(
                            task.task_id, self._clock() + self._drain_grace
                        )
                tasks.append(task.model_copy(update={"health": tracked}))
            seen = {t.task_id for t in tasks}
            for task_id in [tid for tid in self._health if tid not in seen]:
                self._forget(task_id)
        return tasks

    def _with_current_health(self, tasks: list[Task]) -> list[Task]:
        with self._counter_lock:
            return [t.model_copy(update={"health": self._health[t.task_id]}) for t in tasks]

    def _probe_task(self, task: Task) -> None:
        try:
            ok = call_with_timeout(
                self._probe.probe,
                task.task_id,
                self._check,
                timeout=self._check.timeout_seconds,
                operation=f"probe {task.task_id}",
            )
        except ConvoyError as exc:
            logger.warning("Probe of %s errored: %s", task.task_id, exc)
            ok = False

        with self._counter_lock:
            if ok:
                self._failures[task.task_id] = 0
                count = self._successes.get(task.task_id, 0) + 1
                self._successes[task.task_id] = count
                if count >= self._check.healthy_threshold:
                    self._health[task.task_id] = TaskHealth.HEALTHY
                    logger.info("%s (%s) is HEALTHY", task.task_id, task.revision)
            else:
                self._successes[task.task_id] = 0
                count = self._failures.get(task.task_id, 0) + 1
                self._failures[task.task_id] = count
                if count >= self._check.unhealthy_threshold:
                    self._health[task.task_id] = TaskHealth.UNHEALTHY
                    logger.warning(
                        "%s (%s) is UNHEALTHY after %d failed probes",
                        task.task_id,
                        task.revision,
                        count,
                    )

    def _start(self, spec: ServiceSpec) -> Task:
        task_id = call_with_timeout(
            self._platform.start_task,
            self.service_id,
            spec.container,
            spec.revision,
            timeout=self._call_timeout,
            operation="platform.start_task",
        )
        with self._counter_lock:
            self._health[task_id] = TaskHealth.STARTING
        logger.info("Started %s (%s)", task_id, spec.revision)
        return Task(task_id=task_id, revision=spec.revision, health=TaskHealth.STARTING)

    def _stop(self, task: Task, why: str) -> None:
        call_with_timeout(
            self._platform.stop_task,
            task.task_id,
            timeout=self._call_timeout,
            operation="platform.stop_task",
        )
        with self._counter_lock:
            self._forget(task.task_id)
        logger.info("Stopped %s (%s): %s", task.task_id, task.revision, why)

    def _drain(self, task: Task, live: list[Task]) -> list[Task]:
        with self._counter_lock:
            self._health[task.task_id] = TaskHealth.DRAINING
            self._drain_deadlines[task.task_id] = self._clock() + self._drain_grace
        logger.info("Draining %s (%s) for %.0fs", task.task_id, task.revision, self._drain_grace)
        return [
            t.model_copy(update={"health": TaskHealth.DRAINING}) if t.task_id == task.task_id else t
            for t in live
        ]

    def _forget(self, task_id: str) -> None:
        self._health.pop(task_id, None)
        self._successes.pop(task_id, None)
        self._failures.pop(task_id, None)
        self._drain_deadlines.pop(task_id, None)

    @staticmethod
    def _oldest_first(tasks) -> list[Task]:
        return sorted(tasks, key=lambda t: (t.started_at, t.task_id))

    @staticmethod
    def _is_steady(spec: ServiceSpec, tasks: list[Task]) -> bool:
        return len(tasks) == spec.desired_count and all(
            t.revision == spec.revision and t.health == TaskHealth.HEALTHY for t in tasks
        )

    def _report(self, spec: ServiceSpec, live: list[Task]) -> ServiceState:
        return ServiceState(
            service_id=self.service_id,
            tasks=tuple(live),
            current_revision=spec.revision,
            steady_state=self._is_steady(spec, live),
        )
