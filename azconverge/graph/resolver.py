"""Dependency Resolver: declared + inferred edges -> ConvergencePlan.

Edges come from two places:
  * ``depends_on`` lists (EdgeType.EXPLICIT)
  * DeferredValue references found anywhere inside a resource's properties
    (EdgeType.INFERRED)

Ordering is Kahn's algorithm with a min-heap on declaration index, so ties
are always broken the same way.
"""

from __future__ import annotations

import heapq

from azconverge.deferred import find_deferred
from azconverge.errors import CycleDetected, DanglingReference
from azconverge.graph.models import ConvergencePlan, EdgeType, GraphEdge
from azconverge.graph.store import ResourceStore
from azconverge.observability.logging import get_logger

_log = get_logger("graph.resolver")


class DependencyResolver:
    """Builds a ConvergencePlan from a ResourceStore."""

    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    def edges(self) -> list[GraphEdge]:
        """All dependency edges, explicit first, in declaration order.

        Raises DanglingReference for any edge whose source is not declared.
        """
        edges: list[GraphEdge] = []
        seen: set[tuple[str, str]] = set()
        for resource in self._store:
            for dep in resource.depends_on:
                if dep not in self._store:
                    raise DanglingReference(resource.id, dep)
                if (dep, resource.id) not in seen:
                    seen.add((dep, resource.id))
                    edges.append(GraphEdge(dep, resource.id, EdgeType.EXPLICIT))
            for path, deferred in find_deferred(resource.properties):
                for dep in sorted(deferred.dependencies):
                    if dep not in self._store:
                        raise DanglingReference(resource.id, dep)
                    if (dep, resource.id) not in seen:
                        seen.add((dep, resource.id))
                        edges.append(GraphEdge(dep, resource.id, EdgeType.INFERRED, source_field=path))
        return edges

    def plan(self) -> ConvergencePlan:
        edges = self.edges()
        ids = self._store.ids()
        index = {rid: i for i, rid in enumerate(ids)}

        predecessors: dict[str, set[str]] = {rid: set() for rid in ids}
        successors: dict[str, list[str]] = {rid: [] for rid in ids}
        for edge in edges:
            predecessors[edge.target].add(edge.source)
            successors[edge.source].append(edge.target)

        in_degree = {rid: len(preds) for rid, preds in predecessors.items()}
        ready = [index[rid] for rid in ids if in_degree[rid] == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            rid = ids[heapq.heappop(ready)]
            order.append(rid)
            for succ in successors[rid]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(ready, index[succ])

        if len(order) != len(ids):
            remaining = [rid for rid in ids if in_degree[rid] > 0]
            members = _find_cycle(remaining, predecessors)
            _log.error("dependency_cycle", members=members)
            raise CycleDetected(members)

        _log.debug("plan_built", resources=len(order), edges=len(edges))
        return ConvergencePlan(
            order=tuple(order),
            edges=tuple(edges),
            predecessors={rid: frozenset(preds) for rid, preds in predecessors.items()},
        )


def _find_cycle(remaining: list[str], predecessors: dict[str, set[str]]) -> list[str]:
    """Return the members of one concrete cycle among ``remaining``, in edge order.

    Every node left over by Kahn's algorithm has at least one predecessor
    that is also left over, so walking predecessors must revisit a node.
    """
    pending = set(remaining)
    start = remaining[0]
    path: list[str] = []
    position: dict[str, int] = {}
    current = start
    while current not in position:
        position[current] = len(path)
        path.append(current)
        current = min(
            (p for p in predecessors[current] if p in pending),
            key=remaining.index,
        )
    cycle = path[position[current] :]
    cycle.reverse()  # predecessor walk -> dependency order
    return cycle
