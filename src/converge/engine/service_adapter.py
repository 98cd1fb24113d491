"""Service adapter implementing read/apply/destroy through systemctl."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from converge.engine.adapters import fingerprint_of
from converge.engine.command_adapter import CommandAdapter
from converge.engine.errors import PermanentError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from converge.core.state import ResourceState
    from converge.engine.adapters import AdapterContext
    from converge.resources.service import ServiceResource

logger = logging.getLogger(__name__)

_RUNNING_STATES = frozenset({"active", "activating", "reloading"})
_ENABLED_STATES = frozenset({"enabled", "enabled-runtime", "alias", "linked"})
_SHOW_PROPERTIES = ("-p", "LoadState", "-p", "ActiveState", "-p", "UnitFileState")


def parse_show(output: str) -> dict[str, str]:
    """Parse ``systemctl show`` ``Key=Value`` lines."""
    props: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            props[key.strip()] = value.strip()
    return props


class ServiceAdapter(CommandAdapter["ServiceResource"]):
    """Adapter for systemd units."""

    def _show(
        self, ctx: AdapterContext, identity: str, host: str, unit: str
    ) -> dict[str, Any] | None:
        result = self._run(
            ctx,
            host,
            ["systemctl", "show", unit, *_SHOW_PROPERTIES],
            identity=identity,
        )
        props = parse_show(result.stdout)
        if props.get("LoadState") in (None, "", "not-found"):
            return None
        return {
            "host": host,
            "unit": unit,
            "running": props.get("ActiveState") in _RUNNING_STATES,
            "enabled": props.get("UnitFileState") in _ENABLED_STATES,
        }

    def read(
        self, ctx: AdapterContext, identity: str, attributes: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        return self._show(ctx, identity, attributes["host"], attributes["unit"])

    def _systemctl(
        self, ctx: AdapterContext, identity: str, host: str, verb: str, unit: str
    ) -> None:
        logger.info("%s: systemctl %s %s on %s", identity, verb, unit, host)
        self._run(ctx, host, ["systemctl", verb, unit], identity=identity)

    def apply(self, ctx: AdapterContext, desired: ServiceResource) -> str:
        actual = self._show(ctx, desired.identity, desired.host, desired.unit)
        if actual is None:
            raise PermanentError(
                f"Unit {desired.unit} is not installed on {desired.host}",
                identity=desired.identity,
            )

        if actual["enabled"] != desired.enabled:
            verb = "enable" if desired.enabled else "disable"
            self._systemctl(ctx, desired.identity, desired.host, verb, desired.unit)
        if actual["running"] != desired.running:
            verb = "start" if desired.running else "stop"
            self._systemctl(ctx, desired.identity, desired.host, verb, desired.unit)

        return fingerprint_of(desired.host, desired.unit)

    def destroy(self, ctx: AdapterContext, prior: ResourceState) -> None:
        """Stop and disable the unit; the unit file itself belongs to its package."""
        attrs = prior.last_applied_attributes
        host, unit = attrs["host"], attrs["unit"]
        actual = self._show(ctx, prior.identity, host, unit)
        if actual is None:
            return
        if actual["running"]:
            self._systemctl(ctx, prior.identity, host, "stop", unit)
        if actual["enabled"]:
            self._systemctl(ctx, prior.identity, host, "disable", unit)
