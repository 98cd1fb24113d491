from __future__ import annotations

import logging
import re
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

import converge.config as api
from converge.cli import app
from converge.cli.commands import _cancel_on_interrupt
from converge.config.loader import ConfigError
from converge.engine.errors import (
    ApplyCanceled,
    DependencyCycleError,
    PermanentError,
    ValidationError,
)
from converge.engine.types import Action, ChangePlan, ChangeStep, RunReport
from converge.resources.base import Kind
from tests.unit.fakes import InMemoryAdapter, make_registry

if TYPE_CHECKING:
    from click.testing import Result

runner = CliRunner()

_NOOP_PLAN = ChangePlan(
    steps=[ChangeStep(identity="web1", kind=Kind.COMPUTE, action=Action.NOOP)],
)

_CREATE_PLAN = ChangePlan(
    steps=[
        ChangeStep(
            identity="web1",
            kind=Kind.COMPUTE,
            action=Action.CREATE,
            desired={"size": "small", "region": "eu-west-1"},
        )
    ],
)

_YAML = """\
state_path: state.json
settings:
  max_attempts: 2
  backoff_initial: 0.01
  backoff_max: 0.01
compute:
  - identity: web1
    size: small
packages:
  - identity: web1-nginx
    host: 10.0.0.5
    package: nginx
    depends_on: [web1]
"""


def _strip_ansi(text: str) -> str:
    return re.sub(r"\x1b\[[0-9;]*m", "", text)


@pytest.fixture
def adapter(monkeypatch: pytest.MonkeyPatch) -> InMemoryAdapter:
    fake = InMemoryAdapter()
    monkeypatch.setattr(api, "default_registry", lambda: make_registry(fake))
    return fake


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "converge.yaml"
    path.write_text(_YAML)
    return path


def _invoke(*args: str, input: str | None = None) -> Result:  # noqa: A002
    return runner.invoke(app, [*args, "--no-color"], input=input)


def _apply(config_file: Path) -> None:
    result = _invoke("apply", "-c", str(config_file), "--auto-approve")
    assert result.exit_code == 0, result.output


class TestVersion:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "converge 0.1.0" in result.stdout

    def test_short_version_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert "converge" in result.stdout


class TestPlanCommand:
    @patch("converge.config.plan")
    @patch("converge.config.load")
    def test_no_changes_exits_0(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = MagicMock()
        mock_plan.return_value = _NOOP_PLAN

        result = _invoke("plan", "--config", "test.yaml")
        assert result.exit_code == 0
        assert "No changes" in result.stdout
        mock_load.assert_called_once_with(Path("test.yaml"))

    @patch("converge.config.plan")
    @patch("converge.config.load")
    def test_pending_changes_exit_0(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = MagicMock()
        mock_plan.return_value = _CREATE_PLAN

        result = _invoke("plan")
        assert result.exit_code == 0
        assert '+ compute "web1" {' in result.stdout
        assert "Plan: 1 to add, 0 to change, 0 to destroy." in result.stdout

    @patch("converge.config.plan")
    @patch("converge.config.load")
    def test_detailed_exitcode(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = MagicMock()
        mock_plan.return_value = _CREATE_PLAN
        assert _invoke("plan", "--detailed-exitcode").exit_code == 2

        mock_plan.return_value = _NOOP_PLAN
        assert _invoke("plan", "--detailed-exitcode").exit_code == 0

    @patch("converge.config.plan")
    @patch("converge.config.load")
    def test_no_refresh_flag(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = MagicMock()
        mock_plan.return_value = _NOOP_PLAN

        _invoke("plan", "--no-refresh")
        assert mock_plan.call_args.kwargs == {"refresh": False}

    @patch("converge.config.load")
    def test_config_error_exits_1(self, mock_load: MagicMock) -> None:
        mock_load.side_effect = ConfigError("bad config")

        result = _invoke("plan")
        assert result.exit_code == 1
        assert "Configuration error: bad config" in result.output

    @patch("converge.config.load")
    def test_validation_error_lists_errors(self, mock_load: MagicMock) -> None:
        mock_load.side_effect = ValidationError(["'web1': size: bad", "'db1': host: missing"])

        result = _invoke("plan")
        assert result.exit_code == 1
        assert "Validation failed:" in result.output
        assert "  - 'web1': size: bad" in result.output
        assert "  - 'db1': host: missing" in result.output

    @patch("converge.config.plan")
    @patch("converge.config.load")
    def test_cycle_error(self, mock_load: MagicMock, mock_plan: MagicMock) -> None:
        mock_load.return_value = MagicMock()
        mock_plan.side_effect = DependencyCycleError(["a", "b", "a"])

        result = _invoke("plan")
        assert result.exit_code == 1
        assert "Invalid dependency graph" in result.output

    def test_end_to_end(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        result = _invoke("plan", "-c", str(config_file))
        assert result.exit_code == 0
        assert "Plan: 2 to add, 0 to change, 0 to destroy." in result.stdout
        assert adapter.mutations() == []


class TestApplyCommand:
    def test_auto_approve(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        result = _invoke("apply", "-c", str(config_file), "--auto-approve")

        assert result.exit_code == 0, result.output
        output = _strip_ansi(result.output)
        assert "Apply complete! Resources: 2 added, 0 changed, 0 destroyed." in output
        assert (config_file.parent / "state.json").exists()
        assert adapter.mutations() == [("apply", "web1"), ("apply", "web1-nginx")]

    def test_confirm_yes(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        result = _invoke("apply", "-c", str(config_file), input="y\n")
        assert result.exit_code == 0, result.output
        assert "Do you want to apply these changes?" in result.output
        assert len(adapter.mutations()) == 2

    def test_declined(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        result = _invoke("apply", "-c", str(config_file), input="n\n")
        assert result.exit_code == 1
        assert "Apply canceled." in result.output
        assert adapter.mutations() == []

    def test_nothing_to_do(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        _apply(config_file)

        result = _invoke("apply", "-c", str(config_file))
        assert result.exit_code == 0
        assert "No changes. Resources are up-to-date." in result.output

    def test_failed_step_exits_1(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        adapter.failures["web1"] = [PermanentError("quota exceeded", identity="web1")]

        result = _invoke("apply", "-c", str(config_file), "--auto-approve")

        assert result.exit_code == 1
        output = _strip_ansi(result.output)
        assert "Apply finished with errors." in output
        assert "quota exceeded" in output
        # web1-nginx depends on the failed step and never runs
        assert adapter.mutations() == [("apply", "web1")]

    @patch("converge.config.driver_from_config")
    def test_watch(self, mock_driver: MagicMock, config_file: Path) -> None:
        driver = mock_driver.return_value
        driver.run_continuous.return_value = RunReport()

        result = _invoke("apply", "-c", str(config_file), "--watch", "--interval", "5")

        assert result.exit_code == 0, result.output
        assert "converging every 5s" in result.output
        assert driver.run_continuous.call_args.kwargs["interval"] == 5.0
        driver.plan.assert_not_called()

    @patch("converge.config.driver_from_config")
    def test_watch_uses_configured_interval(
        self, mock_driver: MagicMock, config_file: Path
    ) -> None:
        mock_driver.return_value.run_continuous.return_value = None

        result = _invoke("apply", "-c", str(config_file), "--watch")

        assert result.exit_code == 1
        assert "converging every 300s" in result.output

    @patch("converge.config.driver_from_config")
    def test_watch_aborted_by_second_interrupt(
        self, mock_driver: MagicMock, config_file: Path
    ) -> None:
        mock_driver.return_value.run_continuous.side_effect = ApplyCanceled("interrupted")

        result = _invoke("apply", "-c", str(config_file), "--watch")

        assert result.exit_code == 1
        assert "Apply canceled." in result.output

    def test_interrupt_handler_cancels_then_aborts(self) -> None:
        driver = MagicMock()
        driver.cancel_event = threading.Event()
        driver.cancel.side_effect = driver.cancel_event.set

        with _cancel_on_interrupt(driver):
            handler = signal.getsignal(signal.SIGINT)
            handler(signal.SIGINT, None)
            driver.cancel.assert_called_once()
            with pytest.raises(ApplyCanceled):
                handler(signal.SIGINT, None)
        assert signal.getsignal(signal.SIGINT) is not handler

    def test_missing_config(self, tmp_path: Path) -> None:
        result = _invoke("apply", "-c", str(tmp_path / "missing.yaml"))
        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestDestroyCommand:
    def test_destroy_all(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        _apply(config_file)

        result = _invoke("destroy", "-c", str(config_file), input="y\n")

        assert result.exit_code == 0, result.output
        assert "Do you really want to destroy all resources?" in result.output
        assert "0 added, 0 changed, 2 destroyed" in _strip_ansi(result.output)
        assert adapter.objects == {}

    def test_destroy_one(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        _apply(config_file)

        result = _invoke("destroy", "web1-nginx", "-c", str(config_file), "--auto-approve")

        assert result.exit_code == 0, result.output
        assert list(adapter.objects) == ["web1"]

    def test_nothing_tracked(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        result = _invoke("destroy", "-c", str(config_file))
        assert result.exit_code == 0
        assert "No resources to destroy." in result.output


class TestDriftAndRefresh:
    def test_no_drift(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        _apply(config_file)

        result = _invoke("drift", "-c", str(config_file))
        assert result.exit_code == 0
        assert "No drift detected." in result.output

    def test_drift_detected(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        _apply(config_file)
        adapter.objects["web1"]["size"] = "large"

        result = _invoke("drift", "-c", str(config_file))

        assert result.exit_code == 0
        assert "Drift detected:" in result.output
        assert "# web1 will be updated in-place (drifted)" in result.output
        assert '~ size = "small" -> "large"' in result.output

    def test_refresh_marks_drifted(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        _apply(config_file)
        adapter.objects.pop("web1-nginx")

        result = _invoke("refresh", "-c", str(config_file), "--auto-approve")

        assert result.exit_code == 0, result.output
        assert "Refresh: 0 to add, 0 to change, 1 to destroy." in result.output
        assert "State refreshed. 1 resource marked drifted." in result.output

        listing = _invoke("state", "list", "-c", str(config_file))
        assert re.search(r"web1-nginx\s+package\s+drifted", listing.output)

    def test_refresh_declined(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        _apply(config_file)
        adapter.objects["web1"]["size"] = "large"

        result = _invoke("refresh", "-c", str(config_file), input="n\n")

        assert result.exit_code == 1
        assert "Refresh canceled." in result.output

    def test_refresh_up_to_date(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        _apply(config_file)
        result = _invoke("refresh", "-c", str(config_file))
        assert result.exit_code == 0
        assert "No changes. State is up-to-date." in result.output


class TestValidateCommand:
    def test_valid(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        result = _invoke("validate", "-c", str(config_file))
        assert result.exit_code == 0
        assert "Declaration is valid." in result.output
        assert adapter.calls == []

    def test_adapter_rejects(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        adapter.invalid["web1-nginx"] = ["version: not available"]

        result = _invoke("validate", "-c", str(config_file))

        assert result.exit_code == 1
        assert "  - 'web1-nginx': version: not available" in result.output

    def test_unknown_dependency(self, adapter: InMemoryAdapter, tmp_path: Path) -> None:
        path = tmp_path / "converge.yaml"
        path.write_text(
            "packages:\n"
            "  - identity: web1-nginx\n"
            "    host: 10.0.0.5\n"
            "    package: nginx\n"
            "    depends_on: [web9]\n"
        )

        result = _invoke("validate", "-c", str(path))

        assert result.exit_code == 1
        assert "web9" in result.output


class TestStateList:
    def test_empty(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        result = _invoke("state", "list", "-c", str(config_file))
        assert result.exit_code == 0
        assert "No resources tracked." in result.output

    def test_lists_records(self, adapter: InMemoryAdapter, config_file: Path) -> None:
        _apply(config_file)

        result = _invoke("state", "list", "-c", str(config_file))

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert [line.split()[:3] for line in lines] == [
            ["web1", "compute", "applied"],
            ["web1-nginx", "package", "applied"],
        ]


@pytest.fixture
def _reset_pkg_logger():
    yield
    logging.getLogger("converge").setLevel(logging.NOTSET)


@pytest.mark.usefixtures("_reset_pkg_logger")
class TestConfigureLogging:
    """``basicConfig`` is mocked: pytest's own root handler would make it a no-op."""

    @patch("logging.basicConfig")
    def test_verbose_levels(self, mock_bc: MagicMock) -> None:
        from converge.cli import _LOG_FORMAT, _configure_logging

        _configure_logging(1)
        mock_bc.assert_called_once_with(
            level=logging.WARNING,
            format=_LOG_FORMAT,
            stream=sys.stderr,
            force=True,
        )
        assert logging.getLogger("converge").level == logging.INFO

        _configure_logging(2)
        assert logging.getLogger("converge").level == logging.DEBUG

    @patch("logging.basicConfig")
    def test_no_flag_leaves_logging_alone(self, mock_bc: MagicMock) -> None:
        from converge.cli import _configure_logging

        _configure_logging(0)
        mock_bc.assert_not_called()

    @patch("logging.basicConfig")
    def test_env_var_overrides_flags(
        self, mock_bc: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        from converge.cli import _configure_logging

        monkeypatch.setenv("CONVERGE_LOG", "warning")
        _configure_logging(2)
        mock_bc.assert_called_once()
        assert logging.getLogger("converge").level == logging.WARNING

    @patch("logging.basicConfig")
    def test_invalid_env_level(
        self,
        mock_bc: MagicMock,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        from converge.cli import _configure_logging

        monkeypatch.setenv("CONVERGE_LOG", "LOUD")
        _configure_logging(0)
        mock_bc.assert_called_once()
        assert logging.getLogger("converge").level == logging.INFO
        assert "invalid CONVERGE_LOG level" in capsys.readouterr().err

    @patch("logging.basicConfig")
    def test_cli_flag_reaches_callback(self, mock_bc: MagicMock) -> None:
        result = runner.invoke(app, ["-vv", "state", "list", "-c", "/nonexistent.yaml"])
        assert result.exit_code == 1
        mock_bc.assert_called_once()
        assert logging.getLogger("converge").level == logging.DEBUG
