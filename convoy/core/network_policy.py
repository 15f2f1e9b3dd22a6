"""Network reachability policy for the service's security group.

The one hard rule: no accepted ingress rule set may admit the application
port from an unrestricted CIDR.  Public traffic reaches the service only
through the load balancer, which is referenced as a peer group.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from pathlib import Path

from pydantic import TypeAdapter

from convoy.backends.protocols import FirewallClient
from convoy.config import settings
from convoy.core.timeouts import call_with_timeout
from convoy.errors import PolicyViolation
from convoy.models.network import Direction, PortRange, Protocol, SecurityRule

logger = logging.getLogger(__name__)

_RULES_ADAPTER = TypeAdapter(list[SecurityRule])


def load_rules(path: Path) -> tuple[SecurityRule, ...]:
    """Parse a JSON array of security rules."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return tuple(_RULES_ADAPTER.validate_python(data))


def offending_rules(rules: Iterable[SecurityRule], application_port: int) -> list[SecurityRule]:
    """Ingress rules that open *application_port* to the whole internet."""
    return [
        rule
        for rule in rules
        if rule.direction == Direction.INGRESS
        and rule.is_unrestricted
        and rule.covers(application_port, Protocol.TCP)
    ]


class NetworkPolicyEnforcer:
    """Validates and applies the security group for one service.

    Parameters
    ----------
    firewall:
        Backend whose ``replace_rules`` swaps a group's rules in one call.
    group_id:
        The service's security group.
    application_port:
        Port the service listens on; defaults to ``settings.application_port``.
    """

    def __init__(
        self,
        firewall: FirewallClient,
        *,
        group_id: str,
        application_port: int | None = None,
        call_timeout: float | None = None,
    ) -> None:
        self._firewall = firewall
        self.group_id = group_id
        self.application_port = (
            settings.application_port if application_port is None else application_port
        )
        self._call_timeout = call_timeout
        self._lock = threading.Lock()
        self._active: tuple[SecurityRule, ...] = ()

    @property
    def active_rules(self) -> tuple[SecurityRule, ...]:
        with self._lock:
            return self._active

    def validate(self, rules: Iterable[SecurityRule]) -> None:
        """Raise ``PolicyViolation`` if *rules* expose the application port publicly."""
        offending = offending_rules(rules, self.application_port)
        if offending:
            sources = ", ".join(
                f"{r.protocol.value} {r.ports.from_port}-{r.ports.to_port} from {r.cidr}"
                for r in offending
            )
            raise PolicyViolation(
                f"{len(offending)} ingress rule(s) admit port {self.application_port} "
                f"from an unrestricted CIDR: {sources}",
                offending_rules=offending,
            )

    def apply(self, rules: Iterable[SecurityRule]) -> tuple[SecurityRule, ...]:
        """Validate and install *rules*.

        The backend call replaces the whole set.  The active set changes only
        after it succeeds, so a rejected or failed apply leaves the previous
        rules in force.
        """
        proposed = tuple(rules)
        try:
            self.validate(proposed)
        except PolicyViolation as exc:
            logger.warning("Rejected rules for %s: %s", self.group_id, exc)
            raise

        with self._lock:
            call_with_timeout(
                self._firewall.replace_rules,
                self.group_id,
                proposed,
                timeout=self._call_timeout,
                operation="firewall.replace_rules",
            )
            self._active = proposed

        logger.info("Applied %d rule(s) to %s", len(proposed), self.group_id)
        return proposed

    def default_rules(self, lb_group: str) -> tuple[SecurityRule, ...]:
        """Application port from the load balancer only; all egress."""
        return (
            SecurityRule(
                direction=Direction.INGRESS,
                protocol=Protocol.TCP,
                ports=PortRange.single(self.application_port),
                peer_group=lb_group,
                description="application traffic from the load balancer",
            ),
            SecurityRule(
                direction=Direction.EGRESS,
                protocol=Protocol.ALL,
                ports=PortRange.all(),
                cidr="0.0.0.0/0",
                description="all outbound",
            ),
        )
