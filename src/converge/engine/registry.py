"""Resource kind registry for adapter dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from converge.engine.errors import UnknownKindError

if TYPE_CHECKING:
    from converge.engine.adapters import ProviderAdapter
    from converge.resources.base import Kind, Resource


@dataclass(frozen=True)
class KindRegistration:
    kind: Kind
    model: type[Resource]
    adapter: ProviderAdapter[Any]


class KindRegistry:
    """Registry mapping kind -> (model, adapter)."""

    def __init__(self) -> None:
        self._registrations: dict[str, KindRegistration] = {}

    def register(self, model: type[Resource], adapter: ProviderAdapter[Any]) -> None:
        kind = getattr(model, "kind", None)
        if kind is None:
            raise ValueError("Resource model must define a classvar `kind`")

        if kind.value in self._registrations:
            raise ValueError(f"Resource kind already registered: {kind.value}")

        self._registrations[kind.value] = KindRegistration(kind=kind, model=model, adapter=adapter)

    def get(self, kind: Kind | str) -> KindRegistration:
        key = kind.value if isinstance(kind, Enum) else kind
        try:
            return self._registrations[key]
        except KeyError as e:
            raise UnknownKindError(key) from e

    def kinds(self) -> list[str]:
        return sorted(self._registrations)
