"""Shared test fixtures for Convoy."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from convoy.backends.local_registry import LocalRegistry
from convoy.backends.simulated import (
    FlakyRegistry,
    InMemoryFirewall,
    ScriptedBuilder,
    SimulatedClock,
    SimulatedPlatform,
    StaticScanner,
    SyntheticMetricFeed,
)
from convoy.config import ConvoySettings
from convoy.core.desired_state import ServiceSpecStore
from convoy.core.prerequisite_graph import PrerequisiteGraph
from convoy.core.run_ledger import RunLedger
from convoy.core.stage_machine import StageMachine
from convoy.models.pipeline import TriggerEvent
from convoy.models.service import ContainerSpec, ServiceSpec
from convoy.models.stages import DEFAULT_STAGE_DEFINITIONS
from convoy.stack import ServiceStack

OLD_IMAGE = "registry.local/app@sha256:" + "0" * 64
NEW_IMAGE = "registry.local/app@sha256:" + "1" * 64


def no_sleep(_seconds: float) -> None:
    """Backoff sleep that returns immediately."""


@pytest.fixture
def ledger(tmp_path: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_path / "test_ledger.db")


@pytest.fixture
def graph() -> PrerequisiteGraph:
    """Provide a PrerequisiteGraph with the default pipeline stages."""
    return PrerequisiteGraph(DEFAULT_STAGE_DEFINITIONS)


@pytest.fixture
def stage_machine(ledger: RunLedger, graph: PrerequisiteGraph) -> StageMachine:
    return StageMachine(ledger, graph, service_id="web")


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "run-test-001"


@pytest.fixture
def clock() -> SimulatedClock:
    return SimulatedClock()


@pytest.fixture
def platform() -> SimulatedPlatform:
    return SimulatedPlatform()


@pytest.fixture
def old_container() -> ContainerSpec:
    return ContainerSpec(image_ref=OLD_IMAGE)


@pytest.fixture
def new_container() -> ContainerSpec:
    return ContainerSpec(image_ref=NEW_IMAGE)


@pytest.fixture
def store(platform: SimulatedPlatform, old_container: ContainerSpec) -> ServiceSpecStore:
    """A spec store with service ``web`` registered at desired=2 and two healthy tasks."""
    spec_store = ServiceSpecStore(platform)
    spec_store.register(
        ServiceSpec(service_id="web", desired_count=2, container=old_container)
    )
    platform.seed("web", old_container, 2)
    return spec_store


@pytest.fixture
def make_settings() -> Callable[..., ConvoySettings]:
    """Factory fixture: settings that ignore any local .env file."""

    def _factory(**overrides: Any) -> ConvoySettings:
        return ConvoySettings(_env_file=None, **overrides)

    return _factory


@pytest.fixture
def make_trigger() -> Callable[..., TriggerEvent]:
    def _factory(revision: str = "v1.1.0", service_id: str = "web") -> TriggerEvent:
        return TriggerEvent(repository="git.local/web", revision=revision, service_id=service_id)

    return _factory


# ---------------------------------------------------------------------------
# Full service stack on simulated backends
# ---------------------------------------------------------------------------


@dataclass
class Backends:
    builder: ScriptedBuilder
    scanner: StaticScanner
    local_registry: LocalRegistry
    registry: FlakyRegistry
    platform: SimulatedPlatform
    metrics: SyntheticMetricFeed
    firewall: InMemoryFirewall
    clock: SimulatedClock


@pytest.fixture
def backends(tmp_path: Path, clock: SimulatedClock) -> Backends:
    local = LocalRegistry(tmp_path / "registry")
    return Backends(
        builder=ScriptedBuilder(),
        scanner=StaticScanner(),
        local_registry=local,
        registry=FlakyRegistry(local),
        platform=SimulatedPlatform(),
        metrics=SyntheticMetricFeed(),
        firewall=InMemoryFirewall(),
        clock=clock,
    )


@pytest.fixture
def make_stack(
    backends: Backends,
    ledger: RunLedger,
    make_settings: Callable[..., ConvoySettings],
) -> Callable[..., ServiceStack]:
    """Factory fixture: a ServiceStack over ``backends`` with a serving fleet."""

    def _factory(service_id: str = "web", desired_count: int = 2, **overrides: Any) -> ServiceStack:
        config = make_settings(**overrides)
        initial = ContainerSpec(
            image_ref=f"{backends.builder.repository}@sha256:{'0' * 64}",
            port=config.application_port,
        )
        backends.platform.seed(service_id, initial, desired_count)
        return ServiceStack(
            service_id,
            initial,
            builder=backends.builder,
            scanner=backends.scanner,
            registry=backends.registry,
            platform=backends.platform,
            probe=backends.platform,
            metrics=backends.metrics,
            firewall=backends.firewall,
            ledger=ledger,
            config=config,
            desired_count=desired_count,
            clock=backends.clock,
            sleep=backends.clock.sleep,
            backoff_sleep=no_sleep,
        )

    return _factory
