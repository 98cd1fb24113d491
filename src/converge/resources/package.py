"""Installed package resource model."""

from __future__ import annotations

from typing import ClassVar, Literal

from pydantic import Field

from converge.resources.base import Kind, Resource


class PackageResource(Resource):
    """An OS package installed on a host.

    ``version`` of ``None`` means "any installed version"; a pinned
    version is installed with ``apt-get install name=version``.
    """

    kind: ClassVar[Kind] = Kind.PACKAGE
    plan_priority: ClassVar[int] = 50

    host: str = Field(min_length=1)
    package: str = Field(pattern=r"^[a-z0-9][a-z0-9+.-]+$")
    version: str | None = None
    manager: Literal["apt"] = "apt"
