"""Convergence driver: plan -> apply cycles, one-shot or continuous."""

from __future__ import annotations

import logging
import threading
import time
from functools import partial
from typing import TYPE_CHECKING

from converge.core.state import ResourceStatus
from converge.engine.errors import EngineError
from converge.engine.executor import Executor, ProgressCallback
from converge.engine.planner import Planner, attribute_diff
from converge.engine.retry import RetryPolicy, call_with_retry
from converge.engine.types import Action, ApplyResult, ChangePlan, ChangeStep, RunReport

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    from converge.engine.adapters import AdapterContext
    from converge.engine.registry import KindRegistry
    from converge.engine.store import StateStore
    from converge.resources.base import Resource

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.5


class Driver:
    """Orchestrates planning and execution against one state store.

    Each cycle is independent: the only memory carried between cycles is
    the state store itself.
    """

    def __init__(
        self,
        *,
        registry: KindRegistry,
        store: StateStore,
        ctx: AdapterContext,
        retry_policy: RetryPolicy | None = None,
        max_workers: int = 4,
        max_replans: int = 3,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._ctx = ctx
        self._retry = retry_policy or RetryPolicy()
        self._max_workers = max_workers
        self._max_replans = max_replans
        self._cancel = cancel or threading.Event()
        self._sleep = sleep
        self._planner = Planner(registry=registry, store=store, ctx=ctx, retry_policy=self._retry)

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def cancel(self) -> None:
        """Stop after in-flight steps finish or reach a retry boundary."""
        logger.info("Cancellation requested")
        self._cancel.set()

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def validate(self, resources: Sequence[Resource]) -> None:
        self._planner.validate(resources)

    def plan(self, resources: Sequence[Resource], *, refresh: bool = True) -> ChangePlan:
        return self._planner.plan(resources, refresh=refresh)

    def plan_destroy(
        self, identities: Iterable[str] | None = None, *, refresh: bool = True
    ) -> ChangePlan:
        return self._planner.plan_destroy(identities, refresh=refresh)

    def apply(self, plan: ChangePlan, *, progress: ProgressCallback | None = None) -> ApplyResult:
        executor = Executor(
            registry=self._registry,
            store=self._store,
            ctx=self._ctx,
            retry_policy=self._retry,
            max_workers=self._max_workers,
            cancel=self._cancel,
            progress=progress,
            sleep=self._sleep,
        )
        return executor.execute(plan)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def _run(
        self,
        make_plan: Callable[[], ChangePlan],
        *,
        plan: ChangePlan | None,
        progress: ProgressCallback | None,
    ) -> RunReport:
        report = RunReport()
        current = plan if plan is not None else make_plan()
        for attempt in range(self._max_replans + 1):
            report.plans.append(current)
            result = self.apply(current, progress=progress)
            report.results.append(result)
            if not result.conflict or self._cancel.is_set():
                break
            if attempt == self._max_replans:
                logger.error("Still conflicting after %d re-plans; giving up", self._max_replans)
                break
            logger.warning("Plan invalidated by a conflict; re-planning (%d)", attempt + 1)
            current = make_plan()
        return report

    def converge_once(
        self,
        resources: Sequence[Resource],
        *,
        plan: ChangePlan | None = None,
        progress: ProgressCallback | None = None,
        refresh: bool = True,
    ) -> RunReport:
        """Plan and apply once, re-planning from fresh reads after a conflict.

        *plan* may be supplied when the caller already planned (e.g. to show
        it for approval); re-plans are always computed fresh.
        """
        return self._run(
            lambda: self.plan(resources, refresh=refresh), plan=plan, progress=progress
        )

    def destroy(
        self,
        identities: Iterable[str] | None = None,
        *,
        plan: ChangePlan | None = None,
        progress: ProgressCallback | None = None,
    ) -> RunReport:
        targets = list(identities) if identities is not None else None
        return self._run(lambda: self.plan_destroy(targets), plan=plan, progress=progress)

    def run_continuous(
        self,
        load_resources: Callable[[], Sequence[Resource]],
        *,
        interval: float,
        trigger: threading.Event | None = None,
        max_cycles: int | None = None,
        on_cycle: Callable[[RunReport], None] | None = None,
    ) -> RunReport | None:
        """Reconcile repeatedly until canceled (or *max_cycles* is reached).

        The declaration is reloaded every cycle. A cycle starts every
        *interval* seconds, or as soon as *trigger* is set. Declaration and
        planning errors are logged and the loop carries on with the next cycle.
        """
        last: RunReport | None = None
        cycles = 0
        while not self._cancel.is_set():
            cycles += 1
            logger.info("Convergence cycle %d", cycles)
            try:
                last = self.converge_once(load_resources())
            except EngineError as exc:
                logger.error("Cycle %d failed before apply: %s", cycles, exc)
            else:
                if on_cycle is not None:
                    on_cycle(last)
            if max_cycles is not None and cycles >= max_cycles:
                break
            self._wait(interval, trigger)
        return last

    def _wait(self, interval: float, trigger: threading.Event | None) -> None:
        deadline = time.monotonic() + interval
        while not self._cancel.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            woke = (trigger or self._cancel).wait(min(remaining, _POLL_INTERVAL))
            if trigger is not None and woke:
                trigger.clear()
                logger.debug("Cycle triggered externally")
                return

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    def refresh(self, *, persist: bool = False) -> list[ChangeStep]:
        """Compare every tracked resource with what its adapter reports.

        Returns one step per drifted resource: UPDATE when attributes differ,
        DESTROY when the object is gone. With *persist*, drifted records are
        marked ``drifted`` so the next plan re-converges them.
        """
        drifted: list[ChangeStep] = []
        for record in self._store.list():
            adapter = self._registry.get(record.kind).adapter

            read = partial(adapter.read, self._ctx, record.identity, record.last_applied_attributes)
            actual, _ = call_with_retry(read, self._retry, label=f"read {record.identity}")
            prior = dict(record.last_applied_attributes)
            if actual is None:
                step = ChangeStep(
                    identity=record.identity,
                    kind=record.kind,
                    action=Action.DESTROY,
                    prior=prior,
                    drifted=True,
                )
            else:
                diff = {
                    k: {"from": d["to"], "to": d["from"]}
                    for k, d in attribute_diff(prior, actual).items()
                }
                if not diff:
                    continue
                step = ChangeStep(
                    identity=record.identity,
                    kind=record.kind,
                    action=Action.UPDATE,
                    prior=prior,
                    desired=actual,
                    diff=diff,
                    drifted=True,
                )
            drifted.append(step)
            if persist:
                self.mark_drifted(record.identity)

        logger.info("Refresh found %d drifted resources", len(drifted))
        return drifted

    def mark_drifted(self, identity: str) -> None:
        """Record that *identity* no longer matches its last applied attributes."""
        with self._store.lock(identity):
            record = self._store.get(identity)
            if record is None or record.status == ResourceStatus.DRIFTED:
                return
            drifted = record.model_copy(update={"status": ResourceStatus.DRIFTED})
            self._store.put(identity, drifted)
