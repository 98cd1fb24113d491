"""Declared resource definitions.

Declarations are parsed by :mod:`converge.resources.declaration`.
"""

from converge.resources.base import Kind, Resource
from converge.resources.compute import ComputeResource
from converge.resources.network_rule import NetworkRuleResource
from converge.resources.package import PackageResource
from converge.resources.service import ServiceResource

__all__ = [
    "ComputeResource",
    "Kind",
    "NetworkRuleResource",
    "PackageResource",
    "Resource",
    "ServiceResource",
]
