"""Compute adapter implementing read/apply/destroy via the compute API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from converge.engine.adapters import require_cloud
from converge.engine.errors import PermanentError
from converge.engine.rest_adapter import RestAdapter

if TYPE_CHECKING:
    from collections.abc import Mapping

    from converge.core.provider import CloudProvider
    from converge.core.state import ResourceState
    from converge.engine.adapters import AdapterContext
    from converge.resources.compute import ComputeResource

logger = logging.getLogger(__name__)

# Instances in these states are on their way out and count as absent.
_GONE_STATUSES = frozenset({"terminated", "terminating", "deleted"})


class ComputeAdapter(RestAdapter["ComputeResource"]):
    """Adapter for compute instances (``/instances/{identity}``)."""

    collection = "instances"

    def _provider(self, ctx: AdapterContext) -> CloudProvider:
        return require_cloud(ctx.compute, "compute")

    def _read_attrs(self, body: dict[str, Any]) -> dict[str, Any]:
        """Extract attributes matching ComputeResource.desired_attributes."""
        return {
            "size": body.get("size"),
            "image": body.get("image"),
            "region": body.get("region"),
            "labels": dict(body.get("labels") or {}),
        }

    def read(
        self, ctx: AdapterContext, identity: str, attributes: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        """Read an instance. Returns None if it no longer exists."""
        _ = attributes
        response = self._request(ctx, "GET", identity)
        if response is None:
            return None
        body = self._body(response)
        if body.get("status") in _GONE_STATUSES:
            return None
        return self._read_attrs(body)

    def apply(self, ctx: AdapterContext, desired: ComputeResource) -> str:
        """Create or resize an instance."""
        payload = {"name": desired.identity, **desired.desired_attributes}
        response = self._request(ctx, "PUT", desired.identity, json=payload)
        if response is None:
            # 404 on PUT means the collection itself is unknown.
            raise PermanentError(
                f"Compute API has no instance collection for '{desired.identity}'",
                identity=desired.identity,
            )
        body = self._body(response)
        logger.info("Instance %s is %s", desired.identity, body.get("status", "provisioned"))
        return self._fingerprint(desired.identity, body, response)

    def destroy(self, ctx: AdapterContext, prior: ResourceState) -> None:
        """Terminate an instance. Missing instances are already destroyed."""
        response = self._request(ctx, "DELETE", prior.identity)
        if response is None:
            logger.debug("Instance %s already absent", prior.identity)
