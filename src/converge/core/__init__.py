"""Core infrastructure components for converge."""

from converge.core.provider import ApiTokenAuth, CloudProvider, HostProvider
from converge.core.state import ResourceState, ResourceStatus, StateFile

__all__ = [
    "ApiTokenAuth",
    "CloudProvider",
    "HostProvider",
    "ResourceState",
    "ResourceStatus",
    "StateFile",
]
