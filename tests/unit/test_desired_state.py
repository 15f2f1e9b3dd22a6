"""Tests for ServiceSpecStore: the single writer of desired state."""

from __future__ import annotations

import threading

import pytest
from pydantic import ValidationError

from convoy.backends.simulated import SimulatedPlatform
from convoy.core.desired_state import ServiceSpecStore, SpecRejectedError
from convoy.models.service import ContainerSpec, ServiceSpec


class TestServiceSpecStore:
    def test_register_sets_first_generation(self, store: ServiceSpecStore, platform: SimulatedPlatform):
        spec = store.get("web")
        assert spec.generation == 1
        assert platform.specs["web"] == spec

    def test_register_twice_rejected(self, store: ServiceSpecStore, old_container):
        with pytest.raises(ValueError, match="already registered"):
            store.register(ServiceSpec(service_id="web", desired_count=1, container=old_container))

    def test_unknown_service(self, store: ServiceSpecStore):
        with pytest.raises(KeyError, match="not registered"):
            store.get("api")

    def test_apply_deploy_keeps_desired_count(self, store: ServiceSpecStore, new_container):
        spec = store.apply_deploy("web", new_container)
        assert spec.container == new_container
        assert spec.desired_count == 2
        assert spec.generation == 2

    def test_set_desired_count_keeps_container(self, store: ServiceSpecStore, old_container):
        spec = store.set_desired_count("web", 3)
        assert spec.desired_count == 3
        assert spec.container == old_container
        assert spec.generation == 2

    def test_history(self, store: ServiceSpecStore, new_container):
        store.set_desired_count("web", 3)
        store.apply_deploy("web", new_container)
        assert [s.generation for s in store.history("web")] == [1, 2, 3]
        assert store.services() == ["web"]

    def test_history_keeps_recent_generations(self, platform: SimulatedPlatform, old_container):
        store = ServiceSpecStore(platform, history_limit=2)
        store.register(ServiceSpec(service_id="web", desired_count=1, container=old_container))
        for count in (2, 3, 4):
            store.set_desired_count("web", count)
        assert [s.generation for s in store.history("web")] == [3, 4]
        assert store.get("web").generation == 4

    def test_platform_rejection_leaves_spec_unchanged(
        self, store: ServiceSpecStore, platform: SimulatedPlatform
    ):
        platform.accept_specs = False
        with pytest.raises(SpecRejectedError):
            store.set_desired_count("web", 3)
        assert store.get("web").desired_count == 2
        assert store.get("web").generation == 1

    def test_write_revalidates_headroom(self, platform: SimulatedPlatform):
        store = ServiceSpecStore(platform)
        store.register(
            ServiceSpec(
                service_id="web",
                desired_count=2,
                container=ContainerSpec(image_ref="r@sha256:aa"),
                min_healthy_percent=50,
                max_surge_percent=150,
            )
        )
        with pytest.raises(ValidationError):
            store.set_desired_count("web", 1)
        assert store.get("web").desired_count == 2

    def test_concurrent_writers_serialise(self, store: ServiceSpecStore):
        def bump():
            for _ in range(10):
                store.set_desired_count("web", 3)

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.get("web").generation == 41
        generations = [s.generation for s in store.history("web")]
        assert generations == sorted(set(generations))
