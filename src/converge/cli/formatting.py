"""Plan and apply output rendering."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, NamedTuple

import typer

from converge.engine.types import Action, StepStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from converge.engine.types import ApplyResult, ChangePlan, ChangeStep


class _ActionStyle(NamedTuple):
    color: str
    symbol: str
    progress_verb: str
    done_verb: str


ACTION_STYLES: dict[str, _ActionStyle] = {
    "create": _ActionStyle("green", "+", "Creating", "Creation complete"),
    "update": _ActionStyle("yellow", "~", "Updating", "Update complete"),
    "destroy": _ActionStyle("red", "-", "Destroying", "Destroy complete"),
    "no-op": _ActionStyle("bright_black", " ", "", ""),
}

_ACTION_DESC: dict[str, str] = {
    "create": "will be created",
    "update": "will be updated in-place",
    "destroy": "will be destroyed",
    "no-op": "is up-to-date",
}

_STATUS_COLORS: dict[str, str] = {
    StepStatus.APPLIED.value: "green",
    StepStatus.NOOP.value: "bright_black",
    StepStatus.FAILED_RETRYABLE.value: "yellow",
    StepStatus.FAILED_FATAL.value: "red",
    StepStatus.CONFLICT.value: "magenta",
    StepStatus.SKIPPED.value: "bright_black",
}


def styler(color: bool) -> Callable[..., str]:
    """Return ``typer.style`` when *color* is True, otherwise a passthrough."""
    if color:
        return typer.style
    return lambda text, **_kw: text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def has_actionable_changes(plan: ChangePlan) -> bool:
    """Return True if the plan contains any non-NOOP or unreadable steps."""
    return bool(plan.actionable())


def _align_values(items: dict[str, str]) -> list[tuple[str, str]]:
    """Right-pad keys so ``=`` signs align."""
    if not items:
        return []
    max_key = max(len(k) for k in items)
    return [(k.ljust(max_key), v) for k, v in items.items()]


def _format_value(value: Any) -> str:
    """Format a value for display in a plan diff block."""
    if isinstance(value, str):
        return f'"{value}"'
    if value is None:
        return "null"
    return str(value)


# ---------------------------------------------------------------------------
# Plan rendering
# ---------------------------------------------------------------------------


def _step_attrs(step: ChangeStep) -> dict[str, str]:
    """Extract displayable ``key -> formatted value`` pairs from a step."""
    if step.action == Action.CREATE and step.desired:
        return {k: _format_value(v) for k, v in step.desired.items() if v is not None}
    if step.action == Action.UPDATE and step.diff:
        return {
            k: f"{_format_value(d['from'])} -> {_format_value(d['to'])}"
            for k, d in step.diff.items()
        }
    return {}


def format_step(step: ChangeStep, *, color: bool = True) -> str:
    """Render a single ChangeStep as a diff block."""
    style = styler(color)
    action_val = step.action.value
    sc = {"fg": ACTION_STYLES[action_val].color}
    symbol = ACTION_STYLES[action_val].symbol

    header = f"  # {step.identity} {_ACTION_DESC[action_val]}"
    if step.drifted:
        header += " (drifted)"
    if step.read_error:
        header += f" (read failed: {step.read_error})"
    lines = [
        style(header, bold=True, **sc),
        style(f'  {symbol} {step.kind.value} "{step.identity}" {{', **sc),
        *[style(f"      {symbol} {k} = {v}", **sc) for k, v in _align_values(_step_attrs(step))],
        style("    }", **sc),
    ]
    return "\n".join(lines)


def format_steps(steps: Sequence[ChangeStep], *, color: bool = True) -> str:
    """Render a list of steps as diff blocks."""
    blocks = [
        format_step(s, color=color) for s in steps if s.action != Action.NOOP or s.read_error
    ]
    if not blocks:
        return "No changes. Resources are up-to-date."
    return "\n\n".join(blocks)


def format_plan(plan: ChangePlan, *, color: bool = True) -> str:
    """Render the full plan output with per-step diff blocks."""
    return format_steps(plan.steps, color=color)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

_PLAN_VERBS = ("to add", "to change", "to destroy")
_APPLY_VERBS = ("added", "changed", "destroyed")
_SUMMARY_COLORS = ("green", "yellow", "red")


def _format_summary(summary: dict[str, int], verbs: tuple[str, ...], *, color: bool) -> str:
    """Build the ``N verb, N verb, N verb`` part of a summary line."""
    style = styler(color)
    counts = (summary.get("create", 0), summary.get("update", 0), summary.get("destroy", 0))
    parts = [
        style(f"{n} {verb}", fg=fg) if n and color else f"{n} {verb}"
        for n, verb, fg in zip(counts, verbs, _SUMMARY_COLORS, strict=True)
    ]
    return ", ".join(parts)


def steps_summary(steps: Sequence[ChangeStep]) -> dict[str, int]:
    """Count steps by action (create/update/destroy)."""
    summary: dict[str, int] = {"create": 0, "update": 0, "destroy": 0}
    for s in steps:
        if s.action != Action.NOOP:
            summary[s.action.value] += 1
    return summary


def format_plan_summary(
    summary: dict[str, int], *, color: bool = True, header: str = "Plan"
) -> str:
    """Render ``Plan: 2 to add, 1 to change, 0 to destroy.``"""
    return f"{header}: {_format_summary(summary, _PLAN_VERBS, color=color)}."


def format_apply_summary(result: ApplyResult, *, color: bool = True) -> str:
    """Render ``Apply complete! Resources: 2 added, 0 changed, 0 destroyed.``

    The header turns red when any step did not converge.
    """
    style = styler(color)
    if result.ok:
        header = style("Apply complete!", fg="green", bold=True)
    else:
        header = style("Apply finished with errors.", fg="red", bold=True)
    return f"{header} Resources: {_format_summary(result.summary(), _APPLY_VERBS, color=color)}."


def format_step_report(result: ApplyResult, *, color: bool = True) -> str:
    """Render one line per step with its terminal status and error, if any."""
    style = styler(color)
    actionable = [r for r in result.results if r.status != StepStatus.NOOP]
    if not actionable:
        return ""
    width = max(len(r.identity) for r in actionable)
    lines = []
    for r in actionable:
        status = style(r.status.value, fg=_STATUS_COLORS.get(r.status.value))
        line = f"  {r.identity.ljust(width)}  {r.action.value:<7}  {status}"
        if r.attempts > 1:
            line += f" after {r.attempts} attempts"
        if r.error:
            line += f": {r.error}"
        lines.append(line)
    return "\n".join(lines)
