"""Firewall rule resource model."""

from __future__ import annotations

import ipaddress
from typing import ClassVar, Literal

from pydantic import Field, field_validator, model_validator

from converge.resources.base import Kind, Resource


class NetworkRuleResource(Resource):
    kind: ClassVar[Kind] = Kind.NETWORK_RULE
    plan_priority: ClassVar[int] = 20

    port: int | None = Field(default=None, ge=1, le=65535)
    protocol: Literal["tcp", "udp", "icmp"] = "tcp"
    source: str = "0.0.0.0/0"
    direction: Literal["ingress", "egress"] = "ingress"
    rule_action: Literal["allow", "deny"] = "allow"

    @field_validator("source")
    @classmethod
    def _valid_cidr(cls, v: str) -> str:
        try:
            return str(ipaddress.ip_network(v, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid CIDR block: {v!r}") from exc

    @model_validator(mode="after")
    def _port_matches_protocol(self) -> NetworkRuleResource:
        if self.protocol == "icmp" and self.port is not None:
            raise ValueError("port must not be set for icmp rules")
        if self.protocol != "icmp" and self.port is None:
            raise ValueError(f"port is required for {self.protocol} rules")
        return self
