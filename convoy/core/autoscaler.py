"""Target-tracking autoscaler.

Every tick reads one metric value, compares it with the policy target, and
proposes a new desired count one step up or down.  The proposal is clamped
into ``[min_capacity, max_capacity]`` and written through the
``ServiceSpecStore``; the rollout controller then reconciles the change like
any other.  After a scaling action no further action is taken until
``cooldown_seconds`` have passed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

from convoy.backends.protocols import MetricSource
from convoy.config import settings
from convoy.core.desired_state import ServiceSpecStore
from convoy.core.timeouts import call_with_timeout
from convoy.errors import ConvoyError, ScalingBoundViolation
from convoy.models.service import ScalingAction, ScalingEvent, ScalingPolicy

logger = logging.getLogger(__name__)


class Autoscaler:
    """Periodic scaling loop for one service.

    Parameters
    ----------
    store:
        Where desired counts are read from and written to.
    metrics:
        Pollable metric source.
    service_id:
        The service being scaled.
    policy:
        Target, bounds, cooldown, dead band and step.  Defaults to
        ``settings.scaling_policy()``.
    clock:
        Monotonic time source used for the cooldown.
    history_limit:
        Number of recent events kept in ``events``.
    """

    def __init__(
        self,
        store: ServiceSpecStore,
        metrics: MetricSource,
        *,
        service_id: str,
        policy: ScalingPolicy | None = None,
        interval_seconds: float | None = None,
        call_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        history_limit: int | None = None,
    ) -> None:
        self._store = store
        self._metrics = metrics
        self.service_id = service_id
        self.policy = policy or settings.scaling_policy()
        self._interval = (
            settings.autoscale_interval_seconds if interval_seconds is None else interval_seconds
        )
        self._call_timeout = call_timeout
        self._clock = clock
        self._last_action_at: float | None = None
        self.events: deque[ScalingEvent] = deque(
            maxlen=settings.history_limit if history_limit is None else history_limit
        )

    def in_cooldown(self, now: float | None = None) -> bool:
        if self._last_action_at is None:
            return False
        now = self._clock() if now is None else now
        return now - self._last_action_at < self.policy.cooldown_seconds

    def tick(self) -> ScalingEvent:
        """Evaluate the metric once and apply at most one scaling action."""
        policy = self.policy
        now = self._clock()
        current = self._store.get(self.service_id).desired_count

        bounded = policy.clamp(current)
        if bounded != current:
            violation = ScalingBoundViolation(
                current, bounded, policy.min_capacity, policy.max_capacity
            )
            logger.warning("%s: %s", self.service_id, violation)
            return self._apply(
                ScalingAction.SCALE_OUT if bounded > current else ScalingAction.SCALE_IN,
                current,
                bounded,
                now,
                reason="desired count outside bounds",
                clamped=True,
            )

        if self.in_cooldown(now):
            remaining = policy.cooldown_seconds - (now - self._last_action_at)
            return self._record(
                ScalingAction.COOLDOWN,
                current,
                current,
                reason=f"cooldown, {remaining:.0f}s remaining",
            )

        try:
            observed = call_with_timeout(
                self._metrics.read,
                self.service_id,
                policy.metric_type,
                timeout=self._call_timeout,
                operation="metrics.read",
            )
        except ConvoyError as exc:
            logger.warning("%s: metric read failed, holding: %s", self.service_id, exc)
            return self._record(ScalingAction.NO_METRIC, current, current, reason=str(exc))

        if observed is None:
            return self._record(
                ScalingAction.NO_METRIC, current, current, reason="no datapoint"
            )

        ratio = observed / policy.target_value
        if ratio > 1 + policy.dead_band:
            action, proposed = ScalingAction.SCALE_OUT, current + policy.step
        elif ratio < 1 - policy.dead_band:
            action, proposed = ScalingAction.SCALE_IN, current - policy.step
        else:
            return self._record(
                ScalingAction.HOLD,
                current,
                current,
                reason="within dead band",
                observed=observed,
                error_ratio=ratio,
            )

        target = policy.clamp(proposed)
        clamped = target != proposed
        if clamped:
            violation = ScalingBoundViolation(
                proposed, target, policy.min_capacity, policy.max_capacity
            )
            logger.info("%s: %s", self.service_id, violation)

        if target == current:
            return self._record(
                ScalingAction.HOLD,
                current,
                current,
                reason="at capacity bound",
                observed=observed,
                error_ratio=ratio,
                clamped=clamped,
            )

        return self._apply(
            action,
            current,
            target,
            now,
            reason=f"{policy.metric_type}={observed:g} target={policy.target_value:g}",
            observed=observed,
            error_ratio=ratio,
            clamped=clamped,
        )

    def run(self, stop_event: threading.Event) -> None:
        """Tick every interval until *stop_event* is set.

        A failing tick is logged and never ends the loop.
        """
        logger.info("Autoscaler for %s started", self.service_id)
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Autoscaler tick for %s failed", self.service_id)
            stop_event.wait(self._interval)
        logger.info("Autoscaler for %s stopped", self.service_id)

    # ------------------------------------------------------------------

    def _apply(
        self,
        action: ScalingAction,
        before: int,
        after: int,
        now: float,
        **fields,
    ) -> ScalingEvent:
        self._store.set_desired_count(self.service_id, after)
        self._last_action_at = now
        logger.info("%s %s: desired %d -> %d", self.service_id, action.value, before, after)
        return self._record(action, before, after, **fields)

    def _record(self, action: ScalingAction, before: int, after: int, **fields) -> ScalingEvent:
        event = ScalingEvent(
            service_id=self.service_id,
            action=action,
            desired_before=before,
            desired_after=after,
            **fields,
        )
        self.events.append(event)
        return event
