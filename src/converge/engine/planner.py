"""Planner: diff desired resources against recorded and observed state."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from converge.core.state import ResourceStatus, compute_attributes_hash
from converge.engine.errors import AdapterError, UnknownKindError, ValidationError
from converge.engine.graph import DependencyGraph
from converge.engine.retry import RetryPolicy, call_with_retry
from converge.engine.types import Action, ChangePlan, ChangeStep

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from converge.core.state import ResourceState
    from converge.engine.adapters import AdapterContext
    from converge.engine.registry import KindRegistry
    from converge.engine.store import StateStore
    from converge.resources.base import Resource

logger = logging.getLogger(__name__)

ABSENT = "absent"

# Recorded outcomes that force another apply even when nothing differs.
_RECONVERGE = frozenset({ResourceStatus.FAILED, ResourceStatus.DRIFTED})


def values_differ(reference: Any, actual: Any) -> bool:
    """Check whether *actual* differs from *reference*.

    - ``None`` in *reference* means "unspecified" and never differs.
    - For dict values, only keys present in *reference* are compared; extra
      keys present only in *actual* (provider-added defaults) are ignored.
    - Other values use strict equality.
    """
    if reference is None:
        return False
    if isinstance(reference, dict) and isinstance(actual, dict):
        return any(values_differ(v, actual.get(k)) for k, v in reference.items())
    return reference != actual


def attribute_diff(reference: Mapping[str, Any], actual: Mapping[str, Any]) -> dict[str, Any]:
    """``{key: {"from": actual, "to": reference}}`` for every differing key."""
    return {
        k: {"from": actual.get(k), "to": v}
        for k, v in reference.items()
        if values_differ(v, actual.get(k))
    }


def observation_hash(actual: Mapping[str, Any] | None) -> str:
    """Hash of what an adapter reported, with a marker for absent objects."""
    return compute_attributes_hash(actual) or ABSENT


def record_hash(record: ResourceState | None) -> str | None:
    """Hash of the parts of a state record that a plan is computed from."""
    if record is None:
        return None
    return compute_attributes_hash(
        {
            "attributes_hash": record.attributes_hash,
            "fingerprint": record.provider_fingerprint,
            "dependencies": sorted(record.dependencies),
        }
    )


class Planner:
    """Builds a ChangePlan converging recorded state toward declared resources."""

    def __init__(
        self,
        *,
        registry: KindRegistry,
        store: StateStore,
        ctx: AdapterContext,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._ctx = ctx
        self._retry = retry_policy or RetryPolicy()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, resources: Sequence[Resource]) -> dict[str, Resource]:
        """Check identities, kinds and dependencies. Returns identity -> resource.

        Raises:
            ValidationError: Duplicate identity, unregistered kind, unknown
                ``depends_on`` target or adapter-level validation failure.
            DependencyCycleError: The ``depends_on`` graph is not acyclic.
        """
        errors: list[str] = []
        desired: dict[str, Resource] = {}
        for r in resources:
            if r.identity in desired:
                errors.append(f"'{r.identity}': identity: duplicate identity")
                continue
            try:
                reg = self._registry.get(r.kind)
            except UnknownKindError as exc:
                errors.append(f"'{r.identity}': kind: {exc}")
                continue
            errors.extend(f"'{r.identity}': {e}" for e in reg.adapter.validate(self._ctx, r))
            desired[r.identity] = r

        for r in desired.values():
            for dep in r.depends_on:
                if dep == r.identity:
                    errors.append(f"'{r.identity}': depends_on: resource depends on itself")
                elif dep not in desired:
                    errors.append(f"'{r.identity}': depends_on: unknown identity '{dep}'")

        if errors:
            raise ValidationError(errors)

        DependencyGraph(desired, {i: r.depends_on for i, r in desired.items()}).topological_order()
        return desired

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _observe(self, record: ResourceState, step: ChangeStep) -> dict[str, Any] | None:
        """Read the live object behind *record* and note its hash on *step*.

        A read that fails (after retries) flags the step with ``read_error``
        and falls back to the recorded attributes, so one unreachable system
        does not stop the rest of the plan.
        """
        adapter = self._registry.get(record.kind).adapter

        def _call() -> dict[str, Any] | None:
            return adapter.read(self._ctx, record.identity, record.last_applied_attributes)

        try:
            actual, _ = call_with_retry(_call, self._retry, label=f"read {record.identity}")
        except AdapterError as exc:
            logger.error("Cannot read %s: %s", record.identity, exc)
            step.read_error = str(exc)
            return dict(record.last_applied_attributes)
        step.observed_hash = observation_hash(actual)
        return actual

    def _classify(
        self, resource: Resource, record: ResourceState | None, *, refresh: bool
    ) -> ChangeStep:
        """Classify a single declared resource as CREATE, UPDATE, or NOOP."""
        desired = resource.desired_attributes
        step = ChangeStep(
            identity=resource.identity,
            kind=resource.kind,
            action=Action.NOOP,
            depends_on=list(resource.depends_on),
            desired=desired,
            spec=resource,
            state_hash=record_hash(record),
        )

        if record is None:
            step.action = Action.CREATE
            logger.debug("Classified %s as create", resource.identity)
            return step

        if record.kind != resource.kind:
            raise ValidationError(
                [
                    f"'{resource.identity}': kind: changed from {record.kind.value} to "
                    f"{resource.kind.value}; destroy the existing resource first"
                ]
            )

        prior = dict(record.last_applied_attributes)
        step.prior = prior
        actual: dict[str, Any] | None = prior
        if refresh:
            actual = self._observe(record, step)

        if actual is None:
            # Recorded but gone: recreate it.
            step.action = Action.CREATE
            step.drifted = True
            logger.info("%s is recorded but no longer exists; will recreate", resource.identity)
            return step

        drift = attribute_diff(prior, actual)
        changes = attribute_diff(desired, actual if drift else prior)
        if drift:
            logger.info("Drift detected on %s: %s", resource.identity, sorted(drift))
            step.drifted = True

        if sorted(record.dependencies) != sorted(resource.depends_on):
            changes["depends_on"] = {
                "from": sorted(record.dependencies),
                "to": sorted(resource.depends_on),
            }

        if drift or changes or record.status in _RECONVERGE:
            step.action = Action.UPDATE
            step.diff = changes or drift
        logger.debug("Classified %s as %s", resource.identity, step.action.value)
        return step

    def _destroy_step(self, record: ResourceState, *, refresh: bool) -> ChangeStep:
        self._registry.get(record.kind)  # fail early if unknown
        step = ChangeStep(
            identity=record.identity,
            kind=record.kind,
            action=Action.DESTROY,
            prior=dict(record.last_applied_attributes),
            state_hash=record_hash(record),
        )
        if refresh:
            self._observe(record, step)
        return step

    def plan(self, resources: Sequence[Resource], *, refresh: bool = True) -> ChangePlan:
        """Plan the steps converging state toward *resources*.

        Validation and cycle detection complete before any adapter is read.
        Resources whose read fails are planned from recorded state and carry
        ``read_error``.
        """
        logger.info("Planning %d resources (refresh=%s)", len(resources), refresh)
        desired = self.validate(resources)
        records = {r.identity: r for r in self._store.list()}

        steps: dict[str, ChangeStep] = {}
        for identity, resource in desired.items():
            steps[identity] = self._classify(resource, records.get(identity), refresh=refresh)

        orphans = {i: rec for i, rec in records.items() if i not in desired}
        for identity, record in orphans.items():
            steps[identity] = self._destroy_step(record, refresh=refresh)
        self._link_destroys(steps, orphans, records)

        return self._finalize(steps, destroy=False)

    def plan_destroy(
        self, identities: Iterable[str] | None = None, *, refresh: bool = True
    ) -> ChangePlan:
        """Plan destroying tracked resources.

        With no *identities*, every tracked resource is destroyed. Tracked
        resources that depend on a target are destroyed along with it.
        """
        records = {r.identity: r for r in self._store.list()}
        if identities is None:
            targets = set(records)
        else:
            targets = set(identities)
            unknown = sorted(targets - set(records))
            if unknown:
                raise ValidationError([f"'{i}': identity: not tracked in state" for i in unknown])

        tracked = DependencyGraph(records, {i: rec.dependencies for i, rec in records.items()})
        targets = tracked.with_dependents(targets)

        logger.info("Planning destroy of %d resources", len(targets))
        doomed = {i: records[i] for i in targets}
        steps = {i: self._destroy_step(rec, refresh=refresh) for i, rec in doomed.items()}
        self._link_destroys(steps, doomed, records)
        return self._finalize(steps, destroy=True)

    @staticmethod
    def _link_destroys(
        steps: dict[str, ChangeStep],
        doomed: Mapping[str, ResourceState],
        records: Mapping[str, ResourceState],
    ) -> None:
        """Order destroys after everything that still depends on them.

        A destroyed resource waits for the destroy of its dependents, and for
        the create/update that moves a surviving dependent off it.
        """
        for record in records.values():
            dependent = record.identity
            if dependent not in steps:
                continue
            for dep in record.dependencies:
                if dep in doomed and dep != dependent:
                    steps[dep].depends_on.append(dependent)

    def _finalize(self, steps: dict[str, ChangeStep], *, destroy: bool) -> ChangePlan:
        graph = DependencyGraph(steps, {i: s.depends_on for i, s in steps.items()})
        ranks = graph.ranks()
        for identity, step in steps.items():
            step.ordering_rank = ranks[identity]
            step.depends_on = sorted(set(step.depends_on) & set(steps))

        def _key(step: ChangeStep) -> tuple[int, int, str]:
            priority = self._registry.get(step.kind).model.plan_priority
            if step.action == Action.DESTROY:
                priority = -priority
            return (step.ordering_rank, priority, step.identity)

        plan = ChangePlan(destroy=destroy, steps=sorted(steps.values(), key=_key))
        logger.info("Plan: %s", plan.summary())
        return plan
