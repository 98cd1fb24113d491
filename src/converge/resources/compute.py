"""Compute instance resource model."""

from __future__ import annotations

from typing import ClassVar, Literal

from pydantic import Field

from converge.resources.base import Kind, Resource


class ComputeResource(Resource):
    """A virtual machine provisioned through the compute API.

    Instances come first in the plan: packages and services target the
    hosts they create.
    """

    kind: ClassVar[Kind] = Kind.COMPUTE
    plan_priority: ClassVar[int] = 10

    size: Literal["small", "medium", "large", "xlarge"]
    image: str = Field(default="ubuntu-22.04", min_length=1)
    region: str = Field(default="eu-west-1", pattern=r"^[a-z]{2}-[a-z]+-\d+$")
    labels: dict[str, str] = Field(default_factory=dict)
