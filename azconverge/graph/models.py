"""Data structures for the resource dependency graph."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum


class EdgeType(StrEnum):
    """How a dependency between two declared resources was established."""

    EXPLICIT = "explicit"  # listed in depends_on
    INFERRED = "inferred"  # a property references the other resource's outputs


@dataclass(frozen=True)
class GraphEdge:
    """``source`` must settle before ``target`` may start."""

    source: str
    target: str
    edge_type: EdgeType
    source_field: str = ""  # property path of the reference, for inferred edges


@dataclass(frozen=True)
class ConvergencePlan:
    """A topological apply order plus the edges it was derived from.

    ``order`` breaks ties by declaration order, so identical graphs always
    produce identical plans.
    """

    order: tuple[str, ...]
    edges: tuple[GraphEdge, ...] = ()
    predecessors: dict[str, frozenset[str]] = field(default_factory=dict)

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.order)

    def __len__(self) -> int:
        return len(self.order)

    def index(self, resource_id: str) -> int:
        return self.order.index(resource_id)

    def successors(self, resource_id: str) -> list[str]:
        """Direct dependents of ``resource_id``, in plan order."""
        return [rid for rid in self.order if resource_id in self.predecessors.get(rid, frozenset())]

    def dependents(self, resource_id: str) -> list[str]:
        """All transitive dependents of ``resource_id``, in plan order."""
        seen: set[str] = set()
        queue: deque[str] = deque([resource_id])
        while queue:
            current = queue.popleft()
            for succ in self.successors(current):
                if succ not in seen:
                    seen.add(succ)
                    queue.append(succ)
        return [rid for rid in self.order if rid in seen]
