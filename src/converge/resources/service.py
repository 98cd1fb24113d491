"""System service resource model."""

from __future__ import annotations

from typing import ClassVar

from pydantic import Field

from converge.resources.base import Kind, Resource


class ServiceResource(Resource):
    """A systemd unit on a host."""

    kind: ClassVar[Kind] = Kind.SERVICE
    plan_priority: ClassVar[int] = 60

    host: str = Field(min_length=1)
    unit: str = Field(pattern=r"^[A-Za-z0-9@_.:-]+$")
    running: bool = True
    enabled: bool = True
