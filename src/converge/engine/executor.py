"""Executor: apply a ChangePlan against provider adapters.

Steps form a DAG (``ChangeStep.depends_on``). A bounded thread pool runs
every step whose predecessors have all succeeded; a step's state write is
committed before any of its dependents is scheduled. Failures are contained
to the failing step's dependents, a conflict invalidates the rest of the
plan, and cancellation lets in-flight steps finish (or stop at a retry
boundary) without starting new ones.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

from converge.core.state import ResourceState, ResourceStatus, compute_attributes_hash
from converge.engine.errors import ConflictError, PermanentError, TransientError
from converge.engine.planner import observation_hash, record_hash
from converge.engine.retry import RetryPolicy, retrying
from converge.engine.types import (
    TERMINAL_OK,
    Action,
    ApplyResult,
    ChangeStep,
    StepResult,
    StepStatus,
)

if TYPE_CHECKING:
    from converge.engine.adapters import AdapterContext, ProviderAdapter
    from converge.engine.registry import KindRegistry
    from converge.engine.store import StateStore
    from converge.engine.types import ChangePlan

logger = logging.getLogger(__name__)

ProgressEvent = Literal["start", "done", "failed"]
ProgressCallback = Callable[[ChangeStep, ProgressEvent], None]


def _now() -> datetime:
    return datetime.now(UTC)


class Executor:
    """Runs the steps of a plan with retry, containment and per-identity locking."""

    def __init__(
        self,
        *,
        registry: KindRegistry,
        store: StateStore,
        ctx: AdapterContext,
        retry_policy: RetryPolicy | None = None,
        max_workers: int = 4,
        cancel: threading.Event | None = None,
        progress: ProgressCallback | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._registry = registry
        self._store = store
        self._ctx = ctx
        self._retry = retry_policy or RetryPolicy()
        self._max_workers = max_workers
        self._cancel = cancel or threading.Event()
        self._progress = progress
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def execute(self, plan: ChangePlan) -> ApplyResult:
        steps = {s.identity: s for s in plan.steps}
        results = {s.identity: _initial_result(s) for s in plan.steps}
        pending = {i for i, r in results.items() if r.status == StepStatus.PENDING}
        for step in plan.steps:
            if step.read_error is not None:
                logger.error("%s not applied: %s", step.identity, results[step.identity].error)
                self._notify(step, "failed")
        invalidated = False
        logger.info("Applying %d steps (max_workers=%d)", len(pending), self._max_workers)

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="converge-step"
        ) as pool:
            running: dict[Future[StepResult], str] = {}
            while True:
                self._propagate_failures(steps, results, pending)

                if not invalidated and not self._cancel.is_set():
                    ready = sorted(
                        (
                            steps[i]
                            for i in pending
                            if all(results[d].status in TERMINAL_OK for d in steps[i].depends_on)
                        ),
                        key=lambda s: (s.ordering_rank, s.identity),
                    )
                    for step in ready:
                        pending.discard(step.identity)
                        results[step.identity].status = StepStatus.IN_PROGRESS
                        running[pool.submit(self._run_step, step)] = step.identity

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    identity = running.pop(future)
                    results[identity] = future.result()
                    if results[identity].status == StepStatus.CONFLICT:
                        logger.warning("Conflict on %s; remaining plan is stale", identity)
                        invalidated = True

        canceled = self._cancel.is_set()
        reason = "plan invalidated by conflict" if invalidated else "run canceled"
        for identity in pending:
            results[identity].status = StepStatus.SKIPPED
            results[identity].error = reason

        result = ApplyResult(
            results=[results[s.identity] for s in plan.steps],
            conflict=invalidated,
            canceled=canceled and not invalidated,
        )
        logger.info("Apply finished: %s", _status_counts(result))
        return result

    @staticmethod
    def _propagate_failures(
        steps: dict[str, ChangeStep],
        results: dict[str, StepResult],
        pending: set[str],
    ) -> None:
        """Fail every pending step with a fatally failed (transitive) predecessor."""
        changed = True
        while changed:
            changed = False
            for identity in sorted(pending):
                failed = [
                    d
                    for d in steps[identity].depends_on
                    if results[d].status == StepStatus.FAILED_FATAL
                ]
                if failed:
                    pending.discard(identity)
                    results[identity].status = StepStatus.FAILED_FATAL
                    results[identity].error = f"dependency failed: {', '.join(failed)}"
                    logger.error("%s not applied: dependency %s failed", identity, failed[0])
                    changed = True

    # ------------------------------------------------------------------
    # Single step
    # ------------------------------------------------------------------

    def _notify(self, step: ChangeStep, event: ProgressEvent) -> None:
        if self._progress is None:
            return
        try:
            self._progress(step, event)
        except Exception:
            logger.exception("Progress callback failed for %s (%s)", step.identity, event)

    def _run_step(self, step: ChangeStep) -> StepResult:
        result = StepResult(
            identity=step.identity,
            kind=step.kind,
            action=step.action,
            status=StepStatus.IN_PROGRESS,
            started_at=_now(),
        )
        adapter = self._registry.get(step.kind).adapter
        logger.debug("Step %s: %s", step.identity, step.action.value)
        self._notify(step, "start")

        retryer = retrying(
            self._retry, label=step.identity, cancel=self._cancel, sleep=self._sleep
        )
        try:
            with self._store.lock(step.identity) as lock:
                record = self._check_conflict(step, adapter, result)
                try:
                    fingerprint = retryer(self._perform, step, adapter, record)
                finally:
                    result.attempts = retryer.statistics.get("attempt_number", 1)
                self._record_success(step, record, fingerprint)
                if step.action == Action.DESTROY:
                    lock.discard()
            result.status = StepStatus.APPLIED
        except ConflictError as exc:
            result.status = StepStatus.CONFLICT
            result.error = str(exc)
        except TransientError as exc:
            exhausted = result.attempts >= self._retry.max_attempts
            if self._cancel.is_set() and not exhausted:
                result.status = StepStatus.FAILED_RETRYABLE
                logger.warning("%s: canceled at retry boundary: %s", step.identity, exc)
            else:
                result.status = StepStatus.FAILED_FATAL
                logger.error(
                    "%s: giving up after %d attempts: %s", step.identity, result.attempts, exc
                )
            result.error = str(exc)
            self._record_failure(step)
        except PermanentError as exc:
            result.status = StepStatus.FAILED_FATAL
            result.error = str(exc)
            logger.error("%s: %s", step.identity, exc)
            self._record_failure(step)
        except Exception as exc:
            result.status = StepStatus.FAILED_FATAL
            result.error = f"{type(exc).__name__}: {exc}"
            logger.exception("%s: unexpected error", step.identity)
            self._record_failure(step)

        result.finished_at = _now()
        self._notify(step, "done" if result.status == StepStatus.APPLIED else "failed")
        return result

    def _read_with_retry(
        self,
        step: ChangeStep,
        adapter: ProviderAdapter[Any],
        attributes: dict[str, Any],
        result: StepResult,
    ) -> dict[str, Any] | None:
        retryer = retrying(
            self._retry, label=f"read {step.identity}", cancel=self._cancel, sleep=self._sleep
        )
        try:
            return retryer(adapter.read, self._ctx, step.identity, attributes)
        finally:
            result.attempts = retryer.statistics.get("attempt_number", 1)

    def _check_conflict(
        self, step: ChangeStep, adapter: ProviderAdapter[Any], result: StepResult
    ) -> ResourceState | None:
        """Re-check the planned view against live state. Returns the current record."""
        record = self._store.get(step.identity)
        if record_hash(record) != step.state_hash:
            raise ConflictError(
                f"State of {step.identity} changed since the plan was made",
                identity=step.identity,
            )
        if step.observed_hash is not None and record is not None:
            actual = self._read_with_retry(step, adapter, record.last_applied_attributes, result)
            if observation_hash(actual) != step.observed_hash:
                raise ConflictError(
                    f"{step.identity} was modified externally since the plan was made",
                    identity=step.identity,
                )
        return record

    def _perform(
        self, step: ChangeStep, adapter: ProviderAdapter[Any], record: ResourceState | None
    ) -> str | None:
        if step.action in (Action.CREATE, Action.UPDATE):
            if step.spec is None:
                raise PermanentError(f"Missing desired resource for {step.identity}")
            return adapter.apply(self._ctx, step.spec)
        if step.action == Action.DESTROY:
            if record is not None:
                adapter.destroy(self._ctx, record)
            return None
        raise ValueError(f"Unknown action: {step.action}")

    def _record_success(
        self, step: ChangeStep, record: ResourceState | None, fingerprint: str | None
    ) -> None:
        if step.action == Action.DESTROY:
            self._store.delete(step.identity)
            return

        assert step.spec is not None
        attrs = step.spec.desired_attributes
        now = _now()
        self._store.put(
            step.identity,
            ResourceState(
                identity=step.identity,
                kind=step.kind,
                last_applied_attributes=attrs,
                attributes_hash=compute_attributes_hash(attrs) or "",
                provider_fingerprint=fingerprint or "",
                dependencies=list(step.spec.depends_on),
                status=ResourceStatus.APPLIED,
                last_converged_at=now,
                created_at=record.created_at if record is not None else now,
            ),
        )

    def _record_failure(self, step: ChangeStep) -> None:
        """Mark an existing record as failed. Failed creates leave no record."""
        try:
            with self._store.lock(step.identity):
                record = self._store.get(step.identity)
                if record is None or record.status == ResourceStatus.FAILED:
                    return
                failed = record.model_copy(update={"status": ResourceStatus.FAILED})
                self._store.put(step.identity, failed)
        except Exception:
            logger.exception("%s: could not record failure in state", step.identity)


def _initial_result(step: ChangeStep) -> StepResult:
    result = StepResult(
        identity=step.identity,
        kind=step.kind,
        action=step.action,
        status=StepStatus.PENDING,
    )
    if step.read_error is not None:
        result.status = StepStatus.FAILED_FATAL
        result.error = f"read failed: {step.read_error}"
    elif step.action == Action.NOOP:
        result.status = StepStatus.NOOP
    return result


def _status_counts(result: ApplyResult) -> dict[str, int]:
    counts: dict[str, int] = {}
    for r in result.results:
        counts[r.status.value] = counts.get(r.status.value, 0) + 1
    return counts
