"""Package adapter implementing read/apply/destroy through apt on a host."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from converge.engine.adapters import fingerprint_of
from converge.engine.command_adapter import CommandAdapter

if TYPE_CHECKING:
    from collections.abc import Mapping

    from converge.core.state import ResourceState
    from converge.engine.adapters import AdapterContext
    from converge.resources.package import PackageResource

logger = logging.getLogger(__name__)

_APT_ENV = ["env", "DEBIAN_FRONTEND=noninteractive"]
_QUERY_FORMAT = "${db:Status-Status}\t${Version}"


class PackageAdapter(CommandAdapter["PackageResource"]):
    """Adapter for apt packages."""

    def _installed_version(
        self, ctx: AdapterContext, identity: str, host: str, name: str
    ) -> str | None:
        # dpkg-query exits 1 for packages it has never heard of.
        result = self._run(
            ctx,
            host,
            ["dpkg-query", "-W", f"-f={_QUERY_FORMAT}", name],
            identity=identity,
            ok_codes=(0, 1),
        )
        if result.returncode != 0:
            return None
        status, _, version = result.stdout.strip().partition("\t")
        if status != "installed":
            return None
        return version or None

    def read(
        self, ctx: AdapterContext, identity: str, attributes: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        host, name = attributes["host"], attributes["package"]
        version = self._installed_version(ctx, identity, host, name)
        if version is None:
            return None
        return {
            "host": host,
            "package": name,
            "version": version,
            "manager": attributes.get("manager", "apt"),
        }

    def apply(self, ctx: AdapterContext, desired: PackageResource) -> str:
        installed = self._installed_version(ctx, desired.identity, desired.host, desired.package)
        wanted = desired.version
        if installed is not None and (wanted is None or wanted == installed):
            logger.debug(
                "%s: %s %s already installed", desired.identity, desired.package, installed
            )
            return fingerprint_of(desired.host, desired.package, installed)

        target = f"{desired.package}={wanted}" if wanted else desired.package
        self._run(
            ctx,
            desired.host,
            [*_APT_ENV, "apt-get", "install", "-y", "-q", "--allow-downgrades", target],
            identity=desired.identity,
        )
        version = self._installed_version(ctx, desired.identity, desired.host, desired.package)
        logger.info(
            "%s: installed %s %s on %s", desired.identity, desired.package, version, desired.host
        )
        return fingerprint_of(desired.host, desired.package, version)

    def destroy(self, ctx: AdapterContext, prior: ResourceState) -> None:
        attrs = prior.last_applied_attributes
        host, name = attrs["host"], attrs["package"]
        if self._installed_version(ctx, prior.identity, host, name) is None:
            logger.debug("%s: %s already absent from %s", prior.identity, name, host)
            return
        self._run(
            ctx,
            host,
            [*_APT_ENV, "apt-get", "remove", "-y", "-q", name],
            identity=prior.identity,
        )
