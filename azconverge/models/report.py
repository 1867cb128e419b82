"""Apply report data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from azconverge.models.resources import Operation, ResourceState


@dataclass
class ResourceOutcome:
    """Terminal record of one resource in an apply pass."""

    resource_id: str
    type: str
    state: ResourceState = ResourceState.PENDING
    operation: Operation | None = None
    error: str = ""
    error_type: str = ""
    blocked_by: str | None = None  # root-cause resource id for Blocked outcomes
    attempts: int = 0
    duration_s: float = 0.0
    changed_paths: list[str] = field(default_factory=list)
    history: list[ResourceState] = field(default_factory=lambda: [ResourceState.PENDING])
    children: ApplyReport | None = None


@dataclass
class FailureChain:
    """A failed resource plus every resource it blocked."""

    root_cause: str
    error: str
    blocked: list[str] = field(default_factory=list)


@dataclass
class ApplyReport:
    """Result of one convergence pass.

    ``outcomes`` preserves plan order.
    """

    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancelled: bool = False

    def outcome(self, resource_id: str) -> ResourceOutcome:
        return self.outcomes[resource_id]

    @property
    def failed(self) -> list[str]:
        return [rid for rid, o in self.outcomes.items() if o.state == ResourceState.FAILED]

    @property
    def blocked(self) -> list[str]:
        return [rid for rid, o in self.outcomes.items() if o.state == ResourceState.BLOCKED]

    @property
    def settled(self) -> list[str]:
        return [rid for rid, o in self.outcomes.items() if o.state == ResourceState.SETTLED]

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked and not self.cancelled

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def operations(self) -> dict[str, Operation | None]:
        return {rid: o.operation for rid, o in self.outcomes.items()}

    def failure_chains(self) -> list[FailureChain]:
        """Group blocked resources under the failed resource that caused them."""
        chains: dict[str, FailureChain] = {}
        for rid in self.failed:
            chains[rid] = FailureChain(root_cause=rid, error=self.outcomes[rid].error)
        for rid in self.blocked:
            cause = self.outcomes[rid].blocked_by or "cancelled"
            chain = chains.get(cause)
            if chain is None:
                chain = chains[cause] = FailureChain(root_cause=cause, error=cause)
            chain.blocked.append(rid)
        return list(chains.values())

    @property
    def duration_s(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable form, nested workload reports included."""
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "duration_s": round(self.duration_s, 3),
            "resources": [
                {
                    "id": o.resource_id,
                    "type": o.type,
                    "state": o.state.value,
                    "operation": o.operation.value if o.operation else None,
                    "attempts": o.attempts,
                    "duration_s": round(o.duration_s, 3),
                    "error": o.error or None,
                    "error_type": o.error_type or None,
                    "blocked_by": o.blocked_by,
                    "changed_paths": o.changed_paths,
                    "children": o.children.to_dict() if o.children is not None else None,
                }
                for o in self.outcomes.values()
            ],
            "failure_chains": [
                {"root_cause": c.root_cause, "error": c.error, "blocked": c.blocked} for c in self.failure_chains()
            ],
        }
