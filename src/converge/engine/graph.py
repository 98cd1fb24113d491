"""Dependency graph over resource identities."""

from __future__ import annotations

import heapq
from typing import TYPE_CHECKING

from converge.engine.errors import DependencyCycleError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class DependencyGraph:
    """Identities and the identities each one depends on.

    Edges to identities outside the graph, and self edges, are dropped.
    """

    def __init__(
        self,
        nodes: Iterable[str],
        dependencies: Mapping[str, Iterable[str]],
    ) -> None:
        self._nodes = frozenset(nodes)
        self._deps: dict[str, frozenset[str]] = {
            node: frozenset(
                d for d in dependencies.get(node, ()) if d in self._nodes and d != node
            )
            for node in self._nodes
        }

    def dependencies(self, node: str) -> set[str]:
        return set(self._deps[node])

    def dependents(self) -> dict[str, set[str]]:
        """Reverse edges: identity -> identities that depend on it directly."""
        reverse: dict[str, set[str]] = {n: set() for n in self._nodes}
        for node, deps in self._deps.items():
            for dep in deps:
                reverse[dep].add(node)
        return reverse

    def with_dependents(self, roots: Iterable[str]) -> set[str]:
        """*roots* plus everything that transitively depends on them."""
        reverse = self.dependents()
        seen = {r for r in roots if r in self._nodes}
        stack = list(seen)
        while stack:
            for child in reverse[stack.pop()] - seen:
                seen.add(child)
                stack.append(child)
        return seen

    def topological_order(self) -> list[str]:
        """Dependencies first; ties broken by identity.

        Raises:
            DependencyCycleError: Naming every identity that could not be ordered.
        """
        waiting = {n: len(deps) for n, deps in self._deps.items()}
        reverse = self.dependents()
        heap = [n for n, count in waiting.items() if count == 0]
        heapq.heapify(heap)

        order: list[str] = []
        while heap:
            node = heapq.heappop(heap)
            order.append(node)
            for child in reverse[node]:
                waiting[child] -= 1
                if waiting[child] == 0:
                    heapq.heappush(heap, child)

        if len(order) < len(self._nodes):
            raise DependencyCycleError(sorted(n for n, count in waiting.items() if count))
        return order

    def ranks(self) -> dict[str, int]:
        """Longest-path depth: 0 for roots, else one more than the deepest dependency.

        Identities sharing a rank never depend on each other.
        """
        rank: dict[str, int] = {}
        for node in self.topological_order():
            rank[node] = max((rank[d] + 1 for d in self._deps[node]), default=0)
        return rank
