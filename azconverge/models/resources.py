"""Resource declarations and lifecycle states."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from azconverge.deferred import ResolutionCell


class ResourceState(StrEnum):
    """Per-resource state machine.

    Pending -> Resolving -> (Created | Updated | NoOp) -> Settled
    Pending -> Resolving -> Failed
    Pending -> Blocked

    Destroy passes use Resolving -> Deleted -> Settled.
    """

    PENDING = "Pending"
    RESOLVING = "Resolving"
    CREATED = "Created"
    UPDATED = "Updated"
    NOOP = "NoOp"
    DELETED = "Deleted"
    SETTLED = "Settled"
    FAILED = "Failed"
    BLOCKED = "Blocked"


_ALLOWED_TRANSITIONS: dict[ResourceState, frozenset[ResourceState]] = {
    ResourceState.PENDING: frozenset({ResourceState.RESOLVING, ResourceState.BLOCKED}),
    ResourceState.RESOLVING: frozenset(
        {
            ResourceState.CREATED,
            ResourceState.UPDATED,
            ResourceState.NOOP,
            ResourceState.DELETED,
            ResourceState.FAILED,
        }
    ),
    ResourceState.CREATED: frozenset({ResourceState.SETTLED}),
    ResourceState.DELETED: frozenset({ResourceState.SETTLED}),
    ResourceState.UPDATED: frozenset({ResourceState.SETTLED}),
    ResourceState.NOOP: frozenset({ResourceState.SETTLED}),
}


def can_transition(current: ResourceState, target: ResourceState) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


class Operation(StrEnum):
    """What the engine did to converge a resource."""

    CREATE = "Created"
    UPDATE = "Updated"
    NOOP = "NoOp"
    DELETE = "Deleted"


@dataclass
class ResourceOptions:
    """Per-resource execution options."""

    timeout: float | None = None


@dataclass
class Resource:
    """A desired-state resource declaration.

    ``properties`` may contain DeferredValue instances at any depth.  The
    ``outputs`` cell is written exactly once, by the convergence engine, when
    the resource settles.
    """

    id: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    options: ResourceOptions = field(default_factory=ResourceOptions)
    outputs: ResolutionCell[dict[str, Any]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.outputs = ResolutionCell(f"outputs of {self.id}")
