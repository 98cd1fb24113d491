"""Base resource class for declared resources."""

from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Kind(str, Enum):
    COMPUTE = "compute"
    NETWORK_RULE = "network_rule"
    PACKAGE = "package"
    SERVICE = "service"


class Resource(BaseModel):
    """Base class for all declared resources.

    Resources are pure data - they define the desired state.
    Adapters know how to read, apply and destroy them.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: ClassVar[Kind]
    plan_priority: ClassVar[int] = 100

    identity: str = Field(pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$", max_length=128)

    # Lifecycle
    depends_on: tuple[str, ...] = ()

    @field_validator("depends_on", mode="before")
    @classmethod
    def _dedupe_depends_on(cls, v: Any) -> Any:
        if isinstance(v, str):
            return (v,)
        if isinstance(v, list | tuple | set | frozenset):
            return tuple(dict.fromkeys(v))
        return v

    @property
    def desired_attributes(self) -> dict[str, Any]:
        """Typed attributes of the resource, without identity and lifecycle fields."""
        return self.model_dump(mode="json", exclude={"identity", "depends_on"})
