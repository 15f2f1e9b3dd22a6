"""Single-writer store for desired service state.

Every mutation of a ``ServiceSpec``, whether it comes from a deploy or from
the autoscaler, goes through ``ServiceSpecStore`` under that service's lock.
Each accepted write bumps ``generation`` and is pushed to the platform before
it becomes visible to readers.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any

from convoy.backends.protocols import PlatformClient
from convoy.config import settings
from convoy.core.timeouts import call_with_timeout
from convoy.errors import ConvoyError
from convoy.models.service import ContainerSpec, ServiceSpec

logger = logging.getLogger(__name__)


class SpecRejectedError(ConvoyError):
    """The platform did not accept an updated service spec."""


class ServiceSpecStore:
    """Holds the current desired spec per service.

    The most recent *history_limit* generations of each service are kept for
    ``history``.
    """

    def __init__(
        self,
        platform: PlatformClient,
        *,
        call_timeout: float | None = None,
        history_limit: int | None = None,
    ) -> None:
        self._platform = platform
        self._call_timeout = call_timeout
        self._history_limit = (
            settings.history_limit if history_limit is None else history_limit
        )
        self._specs: dict[str, ServiceSpec] = {}
        self._history: dict[str, deque[ServiceSpec]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, service_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(service_id, threading.Lock())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, service_id: str) -> ServiceSpec:
        try:
            return self._specs[service_id]
        except KeyError:
            raise KeyError(f"Service {service_id!r} is not registered") from None

    def history(self, service_id: str) -> list[ServiceSpec]:
        return list(self._history.get(service_id, []))

    def services(self) -> list[str]:
        return sorted(self._specs)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def register(self, spec: ServiceSpec) -> ServiceSpec:
        """Register a service with its initial desired state."""
        with self._lock_for(spec.service_id):
            if spec.service_id in self._specs:
                raise ValueError(f"Service {spec.service_id!r} is already registered")
            return self._commit(spec, generation=1)

    def apply_deploy(self, service_id: str, container: ContainerSpec) -> ServiceSpec:
        """Point the service at a new container; the desired count is kept."""
        with self._lock_for(service_id):
            return self._write(service_id, container=container)

    def set_desired_count(self, service_id: str, desired_count: int) -> ServiceSpec:
        with self._lock_for(service_id):
            return self._write(service_id, desired_count=desired_count)

    def _write(self, service_id: str, **changes: Any) -> ServiceSpec:
        current = self.get(service_id)
        # Rebuild rather than model_copy so headroom validation runs again.
        updated = ServiceSpec.model_validate({**current.model_dump(), **changes})
        return self._commit(updated, generation=current.generation + 1)

    def _commit(self, spec: ServiceSpec, *, generation: int) -> ServiceSpec:
        spec = spec.model_copy(update={"generation": generation})
        accepted = call_with_timeout(
            self._platform.update_service_spec,
            spec.service_id,
            spec,
            timeout=self._call_timeout,
            operation="platform.update_service_spec",
        )
        if not accepted:
            raise SpecRejectedError(
                f"Platform rejected generation {generation} of {spec.service_id}"
            )
        self._specs[spec.service_id] = spec
        self._history.setdefault(
            spec.service_id, deque(maxlen=self._history_limit)
        ).append(spec)
        logger.info(
            "%s gen=%d desired=%d revision=%s",
            spec.service_id,
            spec.generation,
            spec.desired_count,
            spec.revision,
        )
        return spec
