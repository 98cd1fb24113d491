"""CLI command implementations."""

from __future__ import annotations

import os
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer

from converge.cli import app, state_app
from converge.cli.errors import handle_error
from converge.engine.errors import ApplyCanceled

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from converge.config.schema import Config
    from converge.engine.driver import Driver
    from converge.engine.executor import ProgressEvent
    from converge.engine.types import ChangePlan, ChangeStep, RunReport

ConfigPath = Annotated[
    Path,
    typer.Option("--config", "-c", help="Path to the declaration file."),
]

NoColor = Annotated[
    bool,
    typer.Option("--no-color", help="Disable colored output."),
]

AutoApprove = Annotated[
    bool,
    typer.Option("--auto-approve", help="Skip interactive approval."),
]

NoRefresh = Annotated[
    bool,
    typer.Option("--no-refresh", help="Plan from recorded state without reading providers."),
]

DetailedExitCode = Annotated[
    bool,
    typer.Option(
        "--detailed-exitcode",
        help="Exit 2 instead of 0 when the plan has pending changes.",
    ),
]

_DEFAULT_CONFIG = Path("converge.yaml")


def _use_color(no_color: bool) -> bool:
    """Determine whether to use color output."""
    return not (no_color or os.environ.get("NO_COLOR"))


@contextmanager
def _cancel_on_interrupt(driver: Driver) -> Iterator[None]:
    """Turn the first Ctrl-C into a graceful cancel; a second one aborts."""

    def _handler(signum: int, frame: object) -> None:
        _ = signum, frame
        if driver.cancel_event.is_set():
            raise ApplyCanceled("Interrupted again; abandoning in-flight steps")
        typer.echo("\nInterrupt received; finishing in-flight steps...", err=True)
        driver.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _run_with_progress(
    run: Callable[[Callable[[ChangeStep, ProgressEvent], None]], RunReport],
    plan_obj: ChangePlan,
    *,
    color: bool,
) -> RunReport:
    """Run an apply with a Rich progress bar and per-step status lines."""
    from rich.console import Console
    from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

    from converge.cli.formatting import ACTION_STYLES

    console = Console(no_color=not color)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Applying", total=len(plan_obj.actionable()))

        def on_progress(step: ChangeStep, event: ProgressEvent) -> None:
            s = ACTION_STYLES[step.action.value]
            if event == "start":
                progress.update(task, description=f"{step.identity}: {s.progress_verb}...")
            elif event == "done":
                progress.console.print(f"  {step.identity}: {s.done_verb}")
                progress.advance(task)
            else:
                progress.console.print(f"  {step.identity}: failed")
                progress.advance(task)

        return run(on_progress)


def _print_report(report: RunReport, *, color: bool) -> None:
    from converge.cli.formatting import format_apply_summary, format_step_report

    final = report.final
    if report.replans:
        typer.echo(f"Re-planned {report.replans} time(s) after conflicts.")
    step_report = format_step_report(final, color=color)
    if step_report:
        typer.echo(step_report)
    typer.echo()
    typer.echo(format_apply_summary(final, color=color))
    if final.conflict:
        typer.echo("Plan invalidated by a conflicting change; run apply again.", err=True)
    if final.canceled:
        typer.echo("Apply canceled; remaining steps were skipped.", err=True)


def _confirm_and_run(
    plan_obj: ChangePlan,
    driver: Driver,
    run: Callable[[Callable[[ChangeStep, ProgressEvent], None]], RunReport],
    *,
    color: bool,
    auto_approve: bool,
    confirm_msg: str,
    empty_msg: str,
) -> None:
    """Shared flow: show plan -> confirm -> apply with progress -> print report.

    Exits with code 0 if no actionable changes, else with the run's exit code.
    """
    from converge.cli.formatting import (
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )

    if not has_actionable_changes(plan_obj):
        typer.echo(empty_msg)
        raise typer.Exit(0)

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))
    typer.echo()

    if not auto_approve:
        try:
            typer.confirm(confirm_msg, abort=True)
        except typer.Abort as e:
            typer.echo("Apply canceled.", err=True)
            raise typer.Exit(1) from e

    try:
        with _cancel_on_interrupt(driver):
            report = _run_with_progress(run, plan_obj, color=color)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo()
    _print_report(report, color=color)
    raise typer.Exit(report.exit_code)


@app.command()
def plan(
    config: ConfigPath = _DEFAULT_CONFIG,
    no_color: NoColor = False,
    no_refresh: NoRefresh = False,
    detailed_exitcode: DetailedExitCode = False,
) -> None:
    """Show changes required by the declaration.

    Exits 0 on success whether or not changes are pending, 1 on error. With
    --detailed-exitcode, pending changes exit 2.
    """
    from converge.cli.formatting import (
        format_plan,
        format_plan_summary,
        has_actionable_changes,
    )
    from converge.config import load
    from converge.config import plan as plan_fn

    color = _use_color(no_color)
    try:
        cfg = load(config)
        plan_obj = plan_fn(cfg, refresh=not no_refresh)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo(format_plan(plan_obj, color=color))
    typer.echo()
    typer.echo(format_plan_summary(plan_obj.summary(), color=color))

    if detailed_exitcode and has_actionable_changes(plan_obj):
        raise typer.Exit(2)


def _watch(cfg: Config, config: Path, interval: float | None, *, color: bool) -> None:
    from converge.config import driver_from_config, load

    driver = driver_from_config(cfg)
    every = interval if interval is not None else cfg.settings.interval
    typer.echo(f"Watching {config}; converging every {every:g}s (Ctrl-C to stop).")

    def on_cycle(report: RunReport) -> None:
        _print_report(report, color=color)
        typer.echo()

    with _cancel_on_interrupt(driver):
        last = driver.run_continuous(
            lambda: load(config).resources, interval=every, on_cycle=on_cycle
        )
    raise typer.Exit(last.exit_code if last is not None else 1)


@app.command(name="apply")
def apply_cmd(
    config: ConfigPath = _DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    watch: Annotated[
        bool,
        typer.Option("--watch", help="Keep converging until interrupted."),
    ] = False,
    interval: Annotated[
        float | None,
        typer.Option("--interval", min=0.1, help="Seconds between cycles with --watch."),
    ] = None,
    no_color: NoColor = False,
    no_refresh: NoRefresh = False,
) -> None:
    """Converge the managed systems toward the declaration.

    Exits 0 when every step applied or was already up-to-date, 1 otherwise.
    """
    from converge.config import driver_from_config, load

    color = _use_color(no_color)
    try:
        cfg = load(config)
        if watch:
            _watch(cfg, config, interval, color=color)
        driver = driver_from_config(cfg)
        plan_obj = driver.plan(cfg.resources, refresh=not no_refresh)
    except typer.Exit:
        raise
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    def run(progress: Callable[[ChangeStep, ProgressEvent], None]) -> RunReport:
        return driver.converge_once(
            cfg.resources, plan=plan_obj, progress=progress, refresh=not no_refresh
        )

    _confirm_and_run(
        plan_obj,
        driver,
        run,
        color=color,
        auto_approve=auto_approve,
        confirm_msg="Do you want to apply these changes?",
        empty_msg="No changes. Resources are up-to-date.",
    )


@app.command()
def destroy(
    identities: Annotated[
        list[str] | None,
        typer.Argument(help="Identities to destroy (default: every tracked resource)."),
    ] = None,
    config: ConfigPath = _DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    no_color: NoColor = False,
) -> None:
    """Destroy managed resources and the resources that depend on them."""
    from converge.config import driver_from_config, load

    color = _use_color(no_color)
    targets = identities or None
    try:
        cfg = load(config)
        driver = driver_from_config(cfg)
        plan_obj = driver.plan_destroy(targets)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    def run(progress: Callable[[ChangeStep, ProgressEvent], None]) -> RunReport:
        return driver.destroy(targets, plan=plan_obj, progress=progress)

    what = ", ".join(targets) if targets else "all resources"
    _confirm_and_run(
        plan_obj,
        driver,
        run,
        color=color,
        auto_approve=auto_approve,
        confirm_msg=f"Do you really want to destroy {what}?",
        empty_msg="No resources to destroy.",
    )


@app.command(name="refresh")
def refresh_cmd(
    config: ConfigPath = _DEFAULT_CONFIG,
    auto_approve: AutoApprove = False,
    no_color: NoColor = False,
) -> None:
    """Mark resources that drifted from their recorded state."""
    from converge.cli.formatting import format_plan_summary, format_steps, steps_summary
    from converge.config import drift as drift_fn
    from converge.config import load, mark_drifted

    color = _use_color(no_color)
    try:
        cfg = load(config)
        changes = drift_fn(cfg)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if not changes:
        typer.echo("No changes. State is up-to-date.")
        raise typer.Exit(0)

    typer.echo(format_steps(changes, color=color))
    typer.echo()
    typer.echo(format_plan_summary(steps_summary(changes), color=color, header="Refresh"))
    typer.echo()

    if not auto_approve:
        try:
            typer.confirm("Do you want to update the state file?", abort=True)
        except typer.Abort as e:
            typer.echo("Refresh canceled.", err=True)
            raise typer.Exit(1) from e

    try:
        mark_drifted(cfg, changes)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc
    count = len(changes)
    typer.echo(f"State refreshed. {count} resource{'s' if count != 1 else ''} marked drifted.")


@app.command()
def drift(
    config: ConfigPath = _DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """Show drift between recorded state and the live systems."""
    from converge.cli.formatting import format_steps
    from converge.config import drift as drift_fn
    from converge.config import load

    color = _use_color(no_color)
    try:
        cfg = load(config)
        changes = drift_fn(cfg)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if not changes:
        typer.echo("No drift detected. State is up-to-date.")
        raise typer.Exit(0)

    typer.echo("Drift detected:\n")
    typer.echo(format_steps(changes, color=color))


@app.command()
def validate(
    config: ConfigPath = _DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """Validate the declaration without contacting any provider."""
    from converge.cli.formatting import styler
    from converge.config import driver_from_config, load

    color = _use_color(no_color)
    try:
        cfg = load(config)
        driver_from_config(cfg).validate(cfg.resources)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    typer.echo(styler(color)("Declaration is valid.", fg="green"))


@state_app.command(name="list")
def state_list(
    config: ConfigPath = _DEFAULT_CONFIG,
    no_color: NoColor = False,
) -> None:
    """List tracked resources and their last recorded outcome."""
    from converge.config import load, state_records

    color = _use_color(no_color)
    try:
        cfg = load(config)
        records = state_records(cfg)
    except Exception as exc:
        raise typer.Exit(handle_error(exc, color=color)) from exc

    if not records:
        typer.echo("No resources tracked.")
        return

    width = max(len(r.identity) for r in records)
    for r in records:
        converged = r.last_converged_at.isoformat(timespec="seconds")
        line = f"{r.identity.ljust(width)}  {r.kind.value:<12}  {r.status.value:<8}  {converged}"
        typer.echo(line)
