"""Tests for the default resource kind registry factory."""

from __future__ import annotations

import pytest

from converge.config.registry import default_registry
from converge.engine.compute_adapter import ComputeAdapter
from converge.engine.errors import UnknownKindError
from converge.engine.network_rule_adapter import NetworkRuleAdapter
from converge.engine.package_adapter import PackageAdapter
from converge.engine.service_adapter import ServiceAdapter
from converge.resources import (
    ComputeResource,
    NetworkRuleResource,
    PackageResource,
    ServiceResource,
)
from converge.resources.base import Kind


class TestDefaultRegistry:
    def test_all_kinds_registered(self) -> None:
        assert default_registry().kinds() == ["compute", "network_rule", "package", "service"]

    @pytest.mark.parametrize(
        ("kind", "model", "adapter_cls"),
        [
            (Kind.COMPUTE, ComputeResource, ComputeAdapter),
            (Kind.NETWORK_RULE, NetworkRuleResource, NetworkRuleAdapter),
            (Kind.PACKAGE, PackageResource, PackageAdapter),
            (Kind.SERVICE, ServiceResource, ServiceAdapter),
        ],
    )
    def test_registration(self, kind: Kind, model: type, adapter_cls: type) -> None:
        reg = default_registry().get(kind)
        assert reg.kind is kind
        assert reg.model is model
        assert isinstance(reg.adapter, adapter_cls)

    def test_lookup_by_string(self) -> None:
        assert default_registry().get("service").model is ServiceResource

    def test_unknown_kind(self) -> None:
        with pytest.raises(UnknownKindError):
            default_registry().get("dns_record")

    def test_duplicate_registration_rejected(self) -> None:
        registry = default_registry()
        with pytest.raises(ValueError, match="already registered"):
            registry.register(ComputeResource, ComputeAdapter())

    def test_fresh_instance_each_call(self) -> None:
        assert default_registry() is not default_registry()
