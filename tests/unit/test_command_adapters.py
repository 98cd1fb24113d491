from __future__ import annotations

import subprocess
from collections.abc import Sequence
from unittest.mock import MagicMock

import pytest

from converge.core.provider import HostProvider
from converge.core.state import ResourceState
from converge.engine.adapters import AdapterContext
from converge.engine.errors import PermanentError, TransientError
from converge.engine.package_adapter import PackageAdapter
from converge.engine.service_adapter import ServiceAdapter, parse_show
from converge.resources import Kind, PackageResource, ServiceResource


def _done(
    stdout: str = "", returncode: int = 0, stderr: str = ""
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _ctx(
    *results: subprocess.CompletedProcess[str] | Exception,
) -> tuple[AdapterContext, MagicMock]:
    hosts = MagicMock(spec=HostProvider)
    hosts.run.side_effect = list(results)
    return AdapterContext(hosts=hosts, timeout=30.0), hosts


def _argvs(hosts: MagicMock) -> list[Sequence[str]]:
    return [c.args[1] for c in hosts.run.call_args_list]


NOT_INSTALLED = _done(returncode=1, stderr="dpkg-query: no packages found matching nginx")


class TestHostProvider:
    def test_local_command_uses_sudo(self) -> None:
        assert HostProvider().command("localhost", ["systemctl", "start", "nginx"]) == [
            "sudo",
            "-n",
            "systemctl",
            "start",
            "nginx",
        ]

    def test_remote_command_goes_over_ssh(self) -> None:
        hosts = HostProvider(user="deploy", port=2222, identity_file="~/.ssh/id", sudo=False)
        assert hosts.command("10.0.0.5", ["dpkg-query", "-W", "-f=${Version}", "nginx"]) == [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-p",
            "2222",
            "-i",
            "~/.ssh/id",
            "deploy@10.0.0.5",
            "--",
            "dpkg-query -W '-f=${Version}' nginx",
        ]


class TestPackageAdapter:
    def test_read_installed(self) -> None:
        ctx, hosts = _ctx(_done("installed\t1.18.0-6ubuntu14"))
        attrs = {"host": "10.0.0.5", "package": "nginx", "version": None, "manager": "apt"}

        assert PackageAdapter().read(ctx, "nginx", attrs) == {
            "host": "10.0.0.5",
            "package": "nginx",
            "version": "1.18.0-6ubuntu14",
            "manager": "apt",
        }
        assert hosts.run.call_args.kwargs == {"timeout": 30.0}

    @pytest.mark.parametrize(
        "result", [NOT_INSTALLED, _done("config-files\t1.18.0"), _done("not-installed\t")]
    )
    def test_read_absent(self, result: subprocess.CompletedProcess[str]) -> None:
        ctx, _ = _ctx(result)
        assert PackageAdapter().read(ctx, "nginx", {"host": "h", "package": "nginx"}) is None

    def test_apply_installs_pinned_version(self) -> None:
        ctx, hosts = _ctx(NOT_INSTALLED, _done(), _done("installed\t1.18.0"))
        desired = PackageResource(identity="nginx", host="h", package="nginx", version="1.18.0")

        fingerprint = PackageAdapter().apply(ctx, desired)

        assert fingerprint
        install = _argvs(hosts)[1]
        assert install[-1] == "nginx=1.18.0"
        assert "apt-get" in install
        assert "DEBIAN_FRONTEND=noninteractive" in install

    def test_apply_is_idempotent(self) -> None:
        ctx, hosts = _ctx(_done("installed\t1.18.0"))
        desired = PackageResource(identity="nginx", host="h", package="nginx")

        PackageAdapter().apply(ctx, desired)

        assert hosts.run.call_count == 1

    def test_apt_lock_is_transient(self) -> None:
        busy = _done(returncode=100, stderr="E: Could not get lock /var/lib/dpkg/lock-frontend")
        ctx, _ = _ctx(NOT_INSTALLED, busy)
        with pytest.raises(TransientError, match="exited 100"):
            PackageAdapter().apply(ctx, PackageResource(identity="x", host="h", package="nginx"))

    def test_unknown_package_is_permanent(self) -> None:
        missing = _done(returncode=100, stderr="E: Unable to locate package nginx-extra")
        ctx, _ = _ctx(NOT_INSTALLED, missing)
        with pytest.raises(PermanentError, match="Unable to locate package"):
            PackageAdapter().apply(
                ctx, PackageResource(identity="x", host="h", package="nginx-extra")
            )

    def test_ssh_failure_and_timeout_are_transient(self) -> None:
        ctx, _ = _ctx(_done(returncode=255, stderr="ssh: connect to host h port 22"))
        with pytest.raises(TransientError):
            PackageAdapter().read(ctx, "x", {"host": "h", "package": "nginx"})

        ctx, _ = _ctx(subprocess.TimeoutExpired(cmd="ssh", timeout=30.0))
        with pytest.raises(TransientError, match="timed out"):
            PackageAdapter().read(ctx, "x", {"host": "h", "package": "nginx"})

    def test_destroy_removes_installed_package(self) -> None:
        ctx, hosts = _ctx(_done("installed\t1.18.0"), _done())
        prior = ResourceState(
            identity="nginx",
            kind=Kind.PACKAGE,
            last_applied_attributes={"host": "h", "package": "nginx"},
        )

        PackageAdapter().destroy(ctx, prior)

        assert _argvs(hosts)[1][-4:] == ["remove", "-y", "-q", "nginx"]

    def test_destroy_tolerates_absent(self) -> None:
        ctx, hosts = _ctx(NOT_INSTALLED)
        prior = ResourceState(
            identity="nginx",
            kind=Kind.PACKAGE,
            last_applied_attributes={"host": "h", "package": "nginx"},
        )
        PackageAdapter().destroy(ctx, prior)
        assert hosts.run.call_count == 1


def _show(
    load: str = "loaded", active: str = "active", file: str = "enabled"
) -> subprocess.CompletedProcess[str]:
    return _done(f"LoadState={load}\nActiveState={active}\nUnitFileState={file}\n")


class TestServiceAdapter:
    def test_parse_show(self) -> None:
        assert parse_show("LoadState=loaded\nActiveState=active\nnoise\n") == {
            "LoadState": "loaded",
            "ActiveState": "active",
        }

    def test_read(self) -> None:
        ctx, _ = _ctx(_show(active="inactive", file="disabled"))
        assert ServiceAdapter().read(ctx, "svc", {"host": "h", "unit": "nginx"}) == {
            "host": "h",
            "unit": "nginx",
            "running": False,
            "enabled": False,
        }

    def test_read_not_found(self) -> None:
        ctx, _ = _ctx(_show(load="not-found", active="inactive", file=""))
        assert ServiceAdapter().read(ctx, "svc", {"host": "h", "unit": "nginx"}) is None

    def test_apply_enables_and_starts(self) -> None:
        ctx, hosts = _ctx(_show(active="inactive", file="disabled"), _done(), _done())

        ServiceAdapter().apply(ctx, ServiceResource(identity="svc", host="h", unit="nginx"))

        assert _argvs(hosts)[1:] == [
            ["systemctl", "enable", "nginx"],
            ["systemctl", "start", "nginx"],
        ]

    def test_apply_is_idempotent(self) -> None:
        ctx, hosts = _ctx(_show())
        ServiceAdapter().apply(ctx, ServiceResource(identity="svc", host="h", unit="nginx"))
        assert hosts.run.call_count == 1

    def test_apply_missing_unit_is_permanent(self) -> None:
        ctx, _ = _ctx(_show(load="not-found"))
        with pytest.raises(PermanentError, match="not installed"):
            ServiceAdapter().apply(ctx, ServiceResource(identity="svc", host="h", unit="nginx"))

    def test_destroy_stops_and_disables(self) -> None:
        ctx, hosts = _ctx(_show(), _done(), _done())
        prior = ResourceState(
            identity="svc",
            kind=Kind.SERVICE,
            last_applied_attributes={"host": "h", "unit": "nginx"},
        )

        ServiceAdapter().destroy(ctx, prior)

        assert _argvs(hosts)[1:] == [
            ["systemctl", "stop", "nginx"],
            ["systemctl", "disable", "nginx"],
        ]
