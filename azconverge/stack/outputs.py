"""Stack outputs: named values exported after an apply pass."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from azconverge.deferred import DeferredValue
from azconverge.errors import AzConvergeError
from azconverge.models.report import ApplyReport
from azconverge.models.resources import ResourceState

_log = structlog.get_logger(component="stack.outputs")

REDACTED = "[secret]"


@dataclass
class StackOutputs:
    """Output name -> plain value or DeferredValue.  Names in ``secrets`` are redacted when printed."""

    values: dict[str, Any] = field(default_factory=dict)
    secrets: set[str] = field(default_factory=set)

    def declare(self, name: str, value: Any, secret: bool = False) -> None:
        self.values[name] = value
        if secret:
            self.secrets.add(name)

    async def resolve(self, report: ApplyReport | None = None, timeout: float = 60.0) -> dict[str, Any]:
        """Resolve every output.

        With a report, outputs depending on a resource that did not settle
        are reported as None instead of being awaited.
        """
        resolved: dict[str, Any] = {}
        for name, value in self.values.items():
            if not isinstance(value, DeferredValue):
                resolved[name] = value
                continue
            if report is not None and not _upstream_settled(value, report):
                resolved[name] = None
                continue
            try:
                async with asyncio.timeout(timeout):
                    resolved[name] = await value.resolve()
            except (AzConvergeError, TimeoutError) as exc:
                _log.warning("output_unresolved", output=name, error=str(exc) or type(exc).__name__)
                resolved[name] = None
        return resolved


def _upstream_settled(value: DeferredValue[Any], report: ApplyReport) -> bool:
    return all(
        report.outcomes[rid].state == ResourceState.SETTLED
        for rid in value.dependencies
        if rid in report.outcomes
    )
