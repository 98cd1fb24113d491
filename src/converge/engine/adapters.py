"""Engine-facing provider adapter interfaces."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from converge.core.provider import HostProvider
from converge.core.state import compute_attributes_hash
from converge.engine.errors import PermanentError
from converge.resources.base import Resource

if TYPE_CHECKING:
    from collections.abc import Mapping

    from converge.core.provider import CloudProvider
    from converge.core.state import ResourceState

R = TypeVar("R", bound=Resource)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdapterContext:
    """Context passed to adapters.

    ``timeout`` is the deadline, in seconds, for each individual call an
    adapter makes to its external system.
    """

    compute: CloudProvider | None = None
    network: CloudProvider | None = None
    hosts: HostProvider = field(default_factory=HostProvider)
    timeout: float = 60.0


def fingerprint_of(*parts: Any) -> str:
    """Opaque fingerprint derived from the parts that identify an object."""
    digest = compute_attributes_hash({"parts": [str(p) for p in parts]})
    assert digest is not None
    return digest[:16]


class ProviderAdapter(Generic[R]):
    """Base class for provider adapters.

    An adapter owns exactly one resource kind and translates the engine's
    read/apply/destroy capabilities into calls against one external system.
    Failures must be raised as ``TransientError``, ``ConflictError`` or
    ``PermanentError``.
    """

    def validate(self, ctx: AdapterContext, desired: R) -> list[str]:
        """Single-resource validation that needs adapter context.

        Return list of error messages (empty = valid).
        """
        _ = ctx, desired
        return []

    def read(
        self, ctx: AdapterContext, identity: str, attributes: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        """Query the live object. Return None if it does not exist.

        *attributes* are the last applied (or desired) attributes, used to
        locate the object (host, unit name...). The returned mapping uses the
        same keys as the resource's ``desired_attributes``.
        """
        raise NotImplementedError

    def apply(self, ctx: AdapterContext, desired: R) -> str:
        """Create or update the object. Return its provider fingerprint.

        Must be safe to call again with identical input.
        """
        raise NotImplementedError

    def destroy(self, ctx: AdapterContext, prior: ResourceState) -> None:
        """Remove the object. An already absent object is not an error."""
        raise NotImplementedError


def require_cloud(provider: CloudProvider | None, name: str) -> CloudProvider:
    if provider is None:
        raise PermanentError(f"No {name} provider configured")
    return provider
