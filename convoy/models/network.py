"""Network reachability rules gating which callers may reach which ports."""

from __future__ import annotations

import ipaddress
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UNRESTRICTED_CIDRS: frozenset[str] = frozenset({"0.0.0.0/0", "::/0"})


class Direction(str, Enum):
    INGRESS = "INGRESS"
    EGRESS = "EGRESS"


class Protocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"
    ALL = "ALL"


class PortRange(BaseModel):
    """Inclusive port range.  ``PortRange.all()`` covers every port."""

    model_config = ConfigDict(frozen=True)

    from_port: int = Field(ge=0, le=65535)
    to_port: int = Field(ge=0, le=65535)

    @model_validator(mode="after")
    def _ordered(self) -> PortRange:
        if self.from_port > self.to_port:
            raise ValueError(f"from_port {self.from_port} > to_port {self.to_port}")
        return self

    @classmethod
    def single(cls, port: int) -> PortRange:
        return cls(from_port=port, to_port=port)

    @classmethod
    def all(cls) -> PortRange:
        return cls(from_port=0, to_port=65535)

    def contains(self, port: int) -> bool:
        return self.from_port <= port <= self.to_port


class SecurityRule(BaseModel):
    """A single reachability rule.

    Exactly one source selector is set: ``cidr`` for an address range, or
    ``peer_group`` for a reference to another security group (for example
    the load balancer's).
    """

    model_config = ConfigDict(frozen=True)

    direction: Direction
    protocol: Protocol = Protocol.TCP
    ports: PortRange
    cidr: str | None = None
    peer_group: str | None = None
    description: str = ""

    @field_validator("cidr")
    @classmethod
    def _valid_cidr(cls, value: str | None) -> str | None:
        if value is None:
            return value
        # Normalise so "0.0.0.0/0" and equivalent spellings compare equal.
        return str(ipaddress.ip_network(value, strict=False))

    @model_validator(mode="after")
    def _one_source(self) -> SecurityRule:
        if (self.cidr is None) == (self.peer_group is None):
            raise ValueError("exactly one of cidr or peer_group must be set")
        return self

    @property
    def is_unrestricted(self) -> bool:
        return self.cidr in UNRESTRICTED_CIDRS

    def covers(self, port: int, protocol: Protocol = Protocol.TCP) -> bool:
        """Return True if this rule's protocol and ports include *port*."""
        if self.protocol not in (protocol, Protocol.ALL):
            return False
        return self.ports.contains(port)
