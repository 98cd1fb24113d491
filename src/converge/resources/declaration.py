"""Desired-state declaration parsing."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import pydantic

from converge.engine.errors import ValidationError
from converge.resources.base import Kind
from converge.resources.compute import ComputeResource
from converge.resources.network_rule import NetworkRuleResource
from converge.resources.package import PackageResource
from converge.resources.service import ServiceResource

if TYPE_CHECKING:
    from collections.abc import Mapping

    from converge.resources.base import Resource

logger = logging.getLogger(__name__)

RESOURCE_MODELS: dict[Kind, type[Resource]] = {
    Kind.COMPUTE: ComputeResource,
    Kind.NETWORK_RULE: NetworkRuleResource,
    Kind.PACKAGE: PackageResource,
    Kind.SERVICE: ServiceResource,
}

# Declaration section -> kind of the entries it holds.
SECTIONS: dict[str, Kind] = {
    "compute": Kind.COMPUTE,
    "network_rules": Kind.NETWORK_RULE,
    "packages": Kind.PACKAGE,
    "services": Kind.SERVICE,
}


def _label(entry: Any, position: str) -> str:
    if isinstance(entry, dict) and isinstance(entry.get("identity"), str):
        return f"'{entry['identity']}'"
    return position


def _format_errors(label: str, exc: pydantic.ValidationError) -> list[str]:
    errors: list[str] = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"]) or "<resource>"
        errors.append(f"{label}: {field}: {err['msg']}")
    return errors


def _parse_entry(kind: Kind, entry: Any, position: str) -> tuple[Resource | None, list[str]]:
    label = _label(entry, position)
    if not isinstance(entry, dict):
        return None, [f"{label}: expected a mapping, got {type(entry).__name__}"]
    try:
        return RESOURCE_MODELS[kind].model_validate(entry), []
    except pydantic.ValidationError as exc:
        return None, _format_errors(label, exc)


def parse_declaration(raw: Mapping[str, Any]) -> list[Resource]:
    """Validate a desired-state declaration and return its resources.

    Resources may be declared under a per-kind section (``compute``,
    ``network_rules``, ``packages``, ``services``) or in a generic
    ``resources`` list where every entry carries a ``kind`` key.

    Raises:
        ValidationError: Listing every malformed entry, unknown kind and
            duplicate identity found in the declaration.
    """
    errors: list[str] = []
    resources: list[Resource] = []

    for section, kind in SECTIONS.items():
        entries = raw.get(section) or []
        if not isinstance(entries, list):
            errors.append(f"section '{section}': expected a list")
            continue
        for i, entry in enumerate(entries):
            resource, errs = _parse_entry(kind, entry, f"{section}[{i}]")
            errors.extend(errs)
            if resource is not None:
                resources.append(resource)

    generic = raw.get("resources") or []
    if not isinstance(generic, list):
        errors.append("section 'resources': expected a list")
        generic = []
    for i, entry in enumerate(generic):
        position = f"resources[{i}]"
        if not isinstance(entry, dict):
            errors.append(f"{position}: expected a mapping, got {type(entry).__name__}")
            continue
        body = dict(entry)
        kind_name = body.pop("kind", None)
        try:
            kind = Kind(kind_name)
        except ValueError:
            errors.append(f"{_label(entry, position)}: kind: unknown resource kind {kind_name!r}")
            continue
        resource, errs = _parse_entry(kind, body, position)
        errors.extend(errs)
        if resource is not None:
            resources.append(resource)

    seen: dict[str, Kind] = {}
    for r in resources:
        if r.identity in seen:
            errors.append(
                f"'{r.identity}': identity: duplicate identity "
                f"(declared as {seen[r.identity].value} and {r.kind.value})"
            )
        else:
            seen[r.identity] = r.kind

    if errors:
        raise ValidationError(errors)

    logger.debug("Parsed declaration with %d resources", len(resources))
    return resources
