"""Tests for the target-tracking autoscaler."""

from __future__ import annotations

import random
import threading

import pytest

from convoy.backends.simulated import SyntheticMetricFeed
from convoy.core.autoscaler import Autoscaler
from convoy.errors import NetworkError
from convoy.models.service import ScalingAction, ScalingPolicy

POLICY = ScalingPolicy(
    target_value=75.0, min_capacity=1, max_capacity=4, cooldown_seconds=300, dead_band=0.1
)


@pytest.fixture
def feed() -> SyntheticMetricFeed:
    return SyntheticMetricFeed()


@pytest.fixture
def autoscaler(store, feed, clock) -> Autoscaler:
    return Autoscaler(store, feed, service_id="web", policy=POLICY, clock=clock)


class TestTick:
    def test_scale_out_then_cooldown(self, autoscaler, feed, store, clock):
        # target 75% CPU, bounds [1, 4], observed 95%
        feed.push(95.0, 95.0, 95.0)

        event = autoscaler.tick()
        assert event.action == ScalingAction.SCALE_OUT
        assert (event.desired_before, event.desired_after) == (2, 3)
        assert store.get("web").desired_count == 3

        for _ in range(4):
            clock.advance(60)
            held = autoscaler.tick()
            assert held.action == ScalingAction.COOLDOWN
            assert store.get("web").desired_count == 3
        assert feed.reads == 1

        clock.advance(60)
        event = autoscaler.tick()
        assert event.action == ScalingAction.SCALE_OUT
        assert store.get("web").desired_count == 4

    def test_scale_in(self, autoscaler, feed, store):
        feed.push(30.0)
        event = autoscaler.tick()
        assert event.action == ScalingAction.SCALE_IN
        assert store.get("web").desired_count == 1
        assert event.error_ratio == pytest.approx(0.4)

    def test_within_dead_band_holds(self, autoscaler, feed, store):
        feed.push(80.0)
        event = autoscaler.tick()
        assert event.action == ScalingAction.HOLD
        assert event.reason == "within dead band"
        assert store.get("web").desired_count == 2
        assert not autoscaler.in_cooldown()

    def test_clamped_at_max(self, store, feed, clock):
        store.set_desired_count("web", 4)
        scaler = Autoscaler(store, feed, service_id="web", policy=POLICY, clock=clock)
        feed.push(99.0)
        event = scaler.tick()
        assert event.action == ScalingAction.HOLD
        assert event.reason == "at capacity bound"
        assert event.clamped is True
        assert store.get("web").desired_count == 4

    def test_clamped_at_min(self, store, feed, clock):
        store.set_desired_count("web", 1)
        scaler = Autoscaler(store, feed, service_id="web", policy=POLICY, clock=clock)
        feed.push(5.0)
        event = scaler.tick()
        assert event.action == ScalingAction.HOLD
        assert store.get("web").desired_count == 1

    def test_step_is_clamped_not_skipped(self, store, feed, clock):
        policy = POLICY.model_copy(update={"step": 2})
        store.set_desired_count("web", 3)
        scaler = Autoscaler(store, feed, service_id="web", policy=policy, clock=clock)
        feed.push(99.0)
        event = scaler.tick()
        assert event.action == ScalingAction.SCALE_OUT
        assert event.clamped is True
        assert store.get("web").desired_count == 4

    def test_out_of_bounds_count_pulled_back(self, store, feed, clock):
        store.set_desired_count("web", 6)
        scaler = Autoscaler(store, feed, service_id="web", policy=POLICY, clock=clock)
        event = scaler.tick()
        assert event.action == ScalingAction.SCALE_IN
        assert event.clamped is True
        assert store.get("web").desired_count == 4
        assert feed.reads == 0

    def test_no_datapoint_holds(self, autoscaler, feed, store):
        feed.push(None)
        event = autoscaler.tick()
        assert event.action == ScalingAction.NO_METRIC
        assert event.reason == "no datapoint"
        assert store.get("web").desired_count == 2

    def test_read_failure_holds(self, autoscaler, feed, store):
        feed.push(NetworkError("metrics endpoint down"))
        event = autoscaler.tick()
        assert event.action == ScalingAction.NO_METRIC
        assert "metrics endpoint down" in event.reason
        assert store.get("web").desired_count == 2

    def test_events_recorded(self, autoscaler, feed):
        feed.push(95.0, 95.0)
        autoscaler.tick()
        autoscaler.tick()
        assert [e.action for e in autoscaler.events] == [
            ScalingAction.SCALE_OUT,
            ScalingAction.COOLDOWN,
        ]

    def test_event_history_is_capped(self, store, feed, clock):
        autoscaler = Autoscaler(
            store, feed, service_id="web", policy=POLICY, clock=clock, history_limit=3
        )
        feed.push(80.0)
        for _ in range(10):
            autoscaler.tick()
            clock.advance(60)
        assert len(autoscaler.events) == 3
        assert all(e.action == ScalingAction.HOLD for e in autoscaler.events)


class TestBounds:
    def test_desired_never_leaves_bounds(self, autoscaler, feed, store, clock):
        rng = random.Random(7)
        for _ in range(200):
            feed.push(rng.uniform(0, 200))
            autoscaler.tick()
            assert POLICY.min_capacity <= store.get("web").desired_count <= POLICY.max_capacity
            clock.advance(rng.choice([30, 300]))

    def test_zero_cooldown_allows_consecutive_actions(self, store, feed, clock):
        policy = POLICY.model_copy(update={"cooldown_seconds": 0})
        scaler = Autoscaler(store, feed, service_id="web", policy=policy, clock=clock)
        feed.push(95.0, 95.0)
        scaler.tick()
        scaler.tick()
        assert store.get("web").desired_count == 4


class TestRunLoop:
    def test_failing_tick_does_not_end_loop(self, store, clock):
        stop = threading.Event()

        class ExplodingMetrics:
            reads = 0

            def read(self, service_id, metric_type):
                self.reads += 1
                if self.reads >= 3:
                    stop.set()
                raise ValueError("corrupt datapoint")

        metrics = ExplodingMetrics()
        scaler = Autoscaler(
            store, metrics, service_id="web", policy=POLICY, interval_seconds=0, clock=clock
        )
        scaler.run(stop)
        assert metrics.reads == 3
