"""Default resource kind registry factory."""

from __future__ import annotations

from converge.engine.compute_adapter import ComputeAdapter
from converge.engine.network_rule_adapter import NetworkRuleAdapter
from converge.engine.package_adapter import PackageAdapter
from converge.engine.registry import KindRegistry
from converge.engine.service_adapter import ServiceAdapter
from converge.resources.compute import ComputeResource
from converge.resources.network_rule import NetworkRuleResource
from converge.resources.package import PackageResource
from converge.resources.service import ServiceResource


def default_registry() -> KindRegistry:
    """Create a fresh registry with all built-in resource kinds and adapters."""
    registry = KindRegistry()

    registry.register(ComputeResource, ComputeAdapter())
    registry.register(NetworkRuleResource, NetworkRuleAdapter())
    registry.register(PackageResource, PackageAdapter())
    registry.register(ServiceResource, ServiceAdapter())

    return registry
