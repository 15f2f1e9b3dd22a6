"""Tests for the in-memory platform used by the demo and the test suite."""

from __future__ import annotations

from convoy.backends.simulated import SimulatedPlatform
from convoy.models.config import HealthCheck
from convoy.models.service import ContainerSpec, TaskHealth


class TestSimulatedPlatform:
    def test_stop_task_forgets_the_task(self, platform: SimulatedPlatform, old_container: ContainerSpec):
        task_id = platform.start_task("web", old_container, old_container.revision)
        platform.probe(task_id, HealthCheck())
        platform.stop_task(task_id)

        assert platform.stopped == [task_id]
        assert task_id not in platform._task_service
        assert task_id not in platform._task_images
        assert task_id not in platform._probe_counts
        assert platform.probe(task_id, HealthCheck()) is False

    def test_stop_unknown_task_is_ignored(self, platform: SimulatedPlatform):
        platform.stop_task("task-9999")
        assert platform.stopped == []

    def test_set_health_is_reported(self, platform: SimulatedPlatform, old_container: ContainerSpec):
        [task_id] = platform.seed("web", old_container, 1)
        platform.set_health(task_id, TaskHealth.UNHEALTHY)
        [task] = platform.describe_service("web").tasks
        assert task.health == TaskHealth.UNHEALTHY

    def test_probe_script_sequence(self, platform: SimulatedPlatform, old_container: ContainerSpec):
        platform.probe_scripts[old_container.revision] = [False, True]
        task_id = platform.start_task("web", old_container, old_container.revision)
        results = [platform.probe(task_id, HealthCheck()) for _ in range(3)]
        assert results == [False, True, True]
