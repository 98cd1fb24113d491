"""Engine types (plan, steps, reports)."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from converge.resources.base import Kind, Resource


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "no-op"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPLIED = "applied"
    NOOP = "no-op"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FATAL = "failed_fatal"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


TERMINAL_OK = frozenset({StepStatus.APPLIED, StepStatus.NOOP})


class ChangeStep(BaseModel):
    """One create/update/destroy action against one resource identity.

    ``state_hash`` fingerprints the state record the plan was computed from
    and ``observed_hash`` what the adapter reported at plan time (None when
    absent or not read). The executor re-checks both before acting and
    reports a conflict if either changed.

    ``read_error`` is set when the adapter could not be read at plan time.
    The executor fails such a step, and everything depending on it, without
    calling the adapter.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    identity: str
    kind: Kind
    action: Action
    ordering_rank: int = 0
    depends_on: list[str] = Field(default_factory=list)
    desired: dict[str, Any] | None = None
    prior: dict[str, Any] | None = None
    diff: dict[str, Any] | None = None
    drifted: bool = False
    state_hash: str | None = None
    observed_hash: str | None = None
    read_error: str | None = None
    spec: Resource | None = Field(default=None, exclude=True, repr=False)


class ChangePlan(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy: bool = False
    steps: list[ChangeStep] = Field(default_factory=list)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for s in self.steps:
            counts[s.action.value] += 1
        return counts

    def actionable(self) -> list[ChangeStep]:
        return [s for s in self.steps if s.action != Action.NOOP or s.read_error]

    def step(self, identity: str) -> ChangeStep:
        for s in self.steps:
            if s.identity == identity:
                return s
        raise KeyError(identity)


class StepResult(BaseModel):
    identity: str
    kind: Kind
    action: Action
    status: StepStatus
    attempts: int = 0
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ApplyResult(BaseModel):
    """Terminal status of every step of one executed plan."""

    results: list[StepResult] = Field(default_factory=list)
    conflict: bool = False
    canceled: bool = False

    @property
    def failed(self) -> bool:
        return any(r.status == StepStatus.FAILED_FATAL for r in self.results)

    @property
    def ok(self) -> bool:
        return all(r.status in TERMINAL_OK for r in self.results)

    def by_status(self, status: StepStatus) -> list[StepResult]:
        return [r for r in self.results if r.status == status]

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for r in self.results:
            if r.status == StepStatus.APPLIED:
                counts[r.action.value] += 1
        return counts


class RunReport(BaseModel):
    """Outcome of one convergence cycle (possibly several plan/apply rounds)."""

    plans: list[ChangePlan] = Field(default_factory=list)
    results: list[ApplyResult] = Field(default_factory=list)

    @property
    def final(self) -> ApplyResult:
        return self.results[-1] if self.results else ApplyResult()

    @property
    def replans(self) -> int:
        return max(len(self.plans) - 1, 0)

    @property
    def exit_code(self) -> int:
        final = self.final
        if final.failed or final.conflict or final.canceled:
            return 1
        return 0
