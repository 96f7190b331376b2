"""Dependency graph of services and their "requires healthy" edges.

An edge ``(a, b)`` means service ``a`` may only start probing once ``b``
is healthy. The graph is validated on construction and immutable after.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable, Iterator
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from ..errors import GraphConstructionError
from ..services.models import ServiceDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraphIssue:
    """One offending edge (or id) found while validating the graph."""

    kind: str  # duplicate_id | unknown_dependency | cycle
    service_id: str
    dependency_id: str | None = None
    cycle: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind,
            "service_id": self.service_id,
            "dependency_id": self.dependency_id,
        }
        if self.cycle:
            d["cycle"] = list(self.cycle)
        return d


class DependencyGraph:
    """Immutable DAG over service descriptors."""

    def __init__(self, descriptors: Iterable[ServiceDescriptor]) -> None:
        descriptors = list(descriptors)
        issues = _check_ids(descriptors)

        by_id = {d.id: d for d in descriptors}
        issues.extend(_check_cycles(by_id))
        if issues:
            raise GraphConstructionError(issues)

        self._descriptors = MappingProxyType(by_id)
        self._order = tuple(d.id for d in descriptors)
        self._dependencies = MappingProxyType(
            {sid: frozenset(d.depends_on) for sid, d in by_id.items()}
        )
        dependents: dict[str, set[str]] = {sid: set() for sid in by_id}
        for sid, deps in self._dependencies.items():
            for dep in deps:
                dependents[dep].add(sid)
        self._dependents = MappingProxyType({k: frozenset(v) for k, v in dependents.items()})

        logger.debug("Dependency graph built: %d services, %d edges", len(by_id), len(self.edges()))

    # -- lookups ---------------------------------------------------------------

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._descriptors

    def __len__(self) -> int:
        return len(self._order)

    @property
    def service_ids(self) -> tuple[str, ...]:
        """Ids in registry order."""
        return self._order

    def descriptor(self, service_id: str) -> ServiceDescriptor:
        return self._descriptors[service_id]

    def descriptors(self) -> list[ServiceDescriptor]:
        return [self._descriptors[sid] for sid in self._order]

    def dependencies_of(self, service_id: str) -> frozenset[str]:
        return self._dependencies[service_id]

    def dependents_of(self, service_id: str) -> frozenset[str]:
        return self._dependents[service_id]

    def edges(self) -> list[tuple[str, str]]:
        return sorted((sid, dep) for sid, deps in self._dependencies.items() for dep in deps)

    def roots(self) -> list[str]:
        """Services with no dependencies, eligible to start immediately."""
        return [sid for sid in self._order if not self._dependencies[sid]]

    # -- ordering --------------------------------------------------------------

    def topological_batches(self) -> list[list[str]]:
        """Group services into waves that can start concurrently.

        Every service appears in the first batch after all of its
        dependencies. Ids within a batch are sorted.
        """
        remaining = {sid: set(deps) for sid, deps in self._dependencies.items()}
        batches: list[list[str]] = []
        while remaining:
            ready = sorted(sid for sid, deps in remaining.items() if not deps)
            batches.append(ready)
            for sid in ready:
                del remaining[sid]
            for deps in remaining.values():
                deps.difference_update(ready)
        return batches

    def transitive_dependents(self, service_id: str) -> list[str]:
        """Everything downstream of ``service_id``, in topological order."""
        seen: set[str] = set()
        stack = list(self._dependents[service_id])
        while stack:
            sid = stack.pop()
            if sid in seen:
                continue
            seen.add(sid)
            stack.extend(self._dependents[sid])
        return [sid for batch in self.topological_batches() for sid in batch if sid in seen]

    def unblocked_by(self, service_id: str, healthy: Collection[str]) -> list[str]:
        """Dependents of ``service_id`` whose dependencies are now all healthy.

        ``healthy`` must already include ``service_id``.
        """
        return sorted(
            sid for sid in self._dependents[service_id]
            if self._dependencies[sid] <= set(healthy)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "services": list(self._order),
            "edges": [{"service_id": a, "dependency_id": b} for a, b in self.edges()],
            "batches": self.topological_batches(),
        }


# ── Validation ───────────────────────────────────────────────────────────────


def _check_ids(descriptors: list[ServiceDescriptor]) -> list[GraphIssue]:
    issues: list[GraphIssue] = []
    seen: set[str] = set()
    for d in descriptors:
        if d.id in seen:
            issues.append(GraphIssue(kind="duplicate_id", service_id=d.id))
        seen.add(d.id)

    for d in descriptors:
        for dep in sorted(d.depends_on):
            if dep not in seen:
                issues.append(GraphIssue(kind="unknown_dependency", service_id=d.id, dependency_id=dep))
    return issues


def _check_cycles(by_id: dict[str, ServiceDescriptor]) -> list[GraphIssue]:
    """Depth-first search with an explicit stack; every back edge closes a cycle."""
    white, grey, black = 0, 1, 2
    color = {sid: white for sid in by_id}
    issues: list[GraphIssue] = []
    reported: set[frozenset[tuple[str, str]]] = set()

    for root in sorted(by_id):
        if color[root] != white:
            continue
        color[root] = grey
        path = [root]
        pending: list[Iterator[str]] = [iter(sorted(by_id[root].depends_on))]

        while pending:
            dep = next(pending[-1], None)
            if dep is None:
                pending.pop()
                color[path.pop()] = black
                continue
            if dep not in by_id:
                continue  # reported as unknown_dependency
            if color[dep] == grey:
                loop = path[path.index(dep):] + [dep]
                edges = list(zip(loop, loop[1:]))
                key = frozenset(edges)
                if key not in reported:
                    reported.add(key)
                    issues.extend(
                        GraphIssue(kind="cycle", service_id=a, dependency_id=b, cycle=tuple(loop))
                        for a, b in edges
                    )
            elif color[dep] == white:
                color[dep] = grey
                path.append(dep)
                pending.append(iter(sorted(by_id[dep].depends_on)))
    return issues
