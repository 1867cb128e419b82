"""Convergence Engine.

Executes a ConvergencePlan against the registered providers.  Every resource
runs as its own task that first waits for all of its predecessors to reach a
terminal state; independent branches therefore run concurrently, bounded by
``EngineConfig.max_concurrency``.

Per resource:
    1. resolve DeferredValues in its properties (the only suspension point)
    2. read actual state -> create if absent, update if drifted, else no-op
    3. on success write the outputs cell, emit a ResourceEvent, release
       dependents

A failure (fatal provider error, exhausted retries, timeout, credential
error) fails that resource only; everything downstream of it becomes
Blocked and records the root cause.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import Any

import structlog

from azconverge.deferred import resolve_all
from azconverge.engine.diff import drifted_paths
from azconverge.engine.events import EventBus, ResourceEvent
from azconverge.engine.retry import with_retries
from azconverge.errors import (
    AzConvergeError,
    ConfigurationError,
    CredentialError,
    DependentStillPresent,
    OperationCancelled,
    TimeoutExceeded,
    UpstreamFailed,
)
from azconverge.graph.models import ConvergencePlan
from azconverge.graph.store import ResourceStore
from azconverge.models.config import EngineConfig
from azconverge.models.report import ApplyReport, ResourceOutcome
from azconverge.models.resources import Operation, Resource, ResourceState, can_transition
from azconverge.observability.metrics import resource_duration_seconds, resource_operations_total
from azconverge.providers.base import ComponentProvider, ProviderRegistry, ResourceProvider

_log = structlog.get_logger(component="engine.convergence")

CLUSTER_CLASS_TYPES = frozenset({"azure:containerservice/ManagedCluster"})

_OPERATION_STATE = {
    Operation.CREATE: ResourceState.CREATED,
    Operation.UPDATE: ResourceState.UPDATED,
    Operation.NOOP: ResourceState.NOOP,
    Operation.DELETE: ResourceState.DELETED,
}


class ConvergenceEngine:
    """Drives one store to its desired state through a provider registry."""

    def __init__(
        self,
        store: ResourceStore,
        providers: ProviderRegistry,
        config: EngineConfig | None = None,
        events: EventBus | None = None,
        cancel_event: asyncio.Event | None = None,
        name: str = "stack",
    ) -> None:
        self._store = store
        self._providers = providers
        self._config = config or EngineConfig()
        self._events = events or EventBus()
        self._cancel = cancel_event or asyncio.Event()
        self._name = name
        self._done: dict[str, asyncio.Event] = {}
        self._log = _log.bind(engine=name)

    def timeout_for(self, resource: Resource) -> float:
        if resource.options.timeout is not None:
            return resource.options.timeout
        if resource.type in CLUSTER_CLASS_TYPES:
            return self._config.cluster_timeout
        return self._config.leaf_timeout

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(self, plan: ConvergencePlan) -> ApplyReport:
        """Converge every resource in ``plan``.  Never raises for per-resource errors."""
        self._preflight(plan)
        report = self._new_report(plan)
        self._done = {rid: asyncio.Event() for rid in plan}
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        self._log.info("apply_started", resources=len(plan), max_concurrency=self._config.max_concurrency)
        tasks = {
            rid: asyncio.create_task(self._run(rid, plan, report, semaphore), name=f"converge:{rid}")
            for rid in plan
        }
        watcher = asyncio.create_task(self._watch_cancel(tasks, report), name="converge:cancel-watch")
        try:
            await asyncio.gather(*tasks.values())
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            for task in tasks.values():
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)

        report.finished_at = datetime.now(tz=UTC)
        self._log.info(
            "apply_finished",
            settled=len(report.settled),
            failed=len(report.failed),
            blocked=len(report.blocked),
            cancelled=report.cancelled,
            duration_s=round(report.duration_s, 2),
        )
        return report

    def _preflight(self, plan: ConvergencePlan) -> None:
        """Reject plans that cannot run before any provider call is made."""
        for rid in plan:
            if rid not in self._store:
                raise ConfigurationError(f"Plan references undeclared resource '{rid}'")
            resource = self._store.get(rid)
            try:
                self._providers.for_type(resource.type)
            except KeyError as exc:
                raise ConfigurationError(str(exc.args[0])) from exc

    def _new_report(self, plan: ConvergencePlan) -> ApplyReport:
        return ApplyReport(
            outcomes={rid: ResourceOutcome(resource_id=rid, type=self._store.get(rid).type) for rid in plan},
            started_at=datetime.now(tz=UTC),
        )

    async def _watch_cancel(self, tasks: dict[str, asyncio.Task[None]], report: ApplyReport) -> None:
        await self._cancel.wait()
        report.cancelled = True
        self._log.warning("apply_cancel_requested")
        for task in tasks.values():
            if not task.done():
                task.cancel()

    async def _run(
        self,
        rid: str,
        plan: ConvergencePlan,
        report: ApplyReport,
        semaphore: asyncio.Semaphore,
    ) -> None:
        resource = self._store.get(rid)
        outcome = report.outcomes[rid]
        try:
            predecessors = sorted(plan.predecessors.get(rid, frozenset()), key=plan.index)
            for pred in predecessors:
                await self._done[pred].wait()

            for pred in predecessors:
                pred_outcome = report.outcomes[pred]
                if pred_outcome.state != ResourceState.SETTLED:
                    root = pred_outcome.blocked_by if pred_outcome.state == ResourceState.BLOCKED else pred
                    self._block(resource, outcome, root or pred)
                    return

            if self._cancel.is_set():
                report.cancelled = True
                self._block(resource, outcome, "cancelled")
                return

            await self._converge(resource, outcome, semaphore)
        except asyncio.CancelledError:
            report.cancelled = True
            if outcome.state == ResourceState.PENDING:
                self._block(resource, outcome, "cancelled")
            elif outcome.state == ResourceState.RESOLVING:
                self._fail(resource, outcome, OperationCancelled(f"Operation on '{rid}' was cancelled"), {})
        finally:
            self._done[rid].set()

    async def _converge(self, resource: Resource, outcome: ResourceOutcome, semaphore: asyncio.Semaphore) -> None:
        self._transition(outcome, ResourceState.RESOLVING)
        log = self._log.bind(resource_id=resource.id, type=resource.type)
        timeout = self.timeout_for(resource)
        started = time.monotonic()
        properties: dict[str, Any] = {}

        deadline: asyncio.Timeout | None = None
        try:
            async with self._store.lease(resource.id):
                async with asyncio.timeout(timeout) as deadline:
                    properties = await resolve_all(resource.properties)
                    loop = asyncio.get_running_loop()
                    remaining = max(0.0, (deadline.when() or loop.time()) - loop.time())
                    # Queueing behind max_concurrency does not count against the timeout.
                    deadline.reschedule(None)
                    async with semaphore:
                        deadline.reschedule(loop.time() + remaining)
                        if self._cancel.is_set():
                            raise OperationCancelled(f"Apply cancelled before '{resource.id}' started")
                        log.debug("resource_operation_started", timeout_s=timeout)
                        operation, outputs = await self._dispatch(resource, properties, outcome)
        except TimeoutError as exc:
            error: BaseException = exc
            if deadline is not None and deadline.expired():
                error = TimeoutExceeded(resource.id, timeout)
            self._fail(resource, outcome, error, properties, started)
            return
        except AzConvergeError as exc:
            self._fail(resource, outcome, exc, properties, started)
            return
        except Exception as exc:  # noqa: BLE001
            log.error("resource_operation_unexpected_error", error=str(exc), exc_info=True)
            self._fail(resource, outcome, exc, properties, started)
            return

        self._settle(resource, outcome, operation, properties, outputs, started)

    async def _dispatch(
        self,
        resource: Resource,
        properties: dict[str, Any],
        outcome: ResourceOutcome,
    ) -> tuple[Operation, dict[str, Any]]:
        provider = self._providers.for_type(resource.type)
        if isinstance(provider, ComponentProvider):
            outcome.attempts = 1
            try:
                result = await provider.converge(resource, properties)
            except AzConvergeError as exc:
                outcome.children = getattr(exc, "report", None)
                raise
            outcome.children = result.report
            return result.operation, result.outputs
        return await with_retries(
            lambda: self._converge_resource(provider, resource, properties, outcome),
            max_attempts=self._config.max_attempts,
            base=self._config.backoff_base,
            cap=self._config.backoff_max,
            resource_id=resource.id,
            resource_type=resource.type,
            on_attempt=lambda n: setattr(outcome, "attempts", n),
        )

    async def _converge_resource(
        self,
        provider: ResourceProvider,
        resource: Resource,
        properties: dict[str, Any],
        outcome: ResourceOutcome,
    ) -> tuple[Operation, dict[str, Any]]:
        current = await provider.read(resource.type, properties)
        if current is None:
            operation, state = Operation.CREATE, await provider.create(resource.type, properties)
        else:
            changes = drifted_paths(provider.desired_state(resource.type, properties), current)
            if changes:
                outcome.changed_paths = changes
                self._log.info("resource_drift_detected", resource_id=resource.id, paths=changes[:20])
                operation, state = Operation.UPDATE, await provider.update(resource.type, properties, current)
            else:
                operation, state = Operation.NOOP, current
        if not provider.is_ready(resource.type, state):
            self._log.info("resource_awaiting_readiness", resource_id=resource.id, type=resource.type)
            state = await provider.wait_ready(resource.type, properties, state)
        return operation, state

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _settle(
        self,
        resource: Resource,
        outcome: ResourceOutcome,
        operation: Operation,
        properties: dict[str, Any],
        outputs: dict[str, Any],
        started: float,
    ) -> None:
        self._transition(outcome, _OPERATION_STATE[operation])
        outcome.operation = operation
        outcome.duration_s = time.monotonic() - started
        resource.outputs.set(outputs)
        self._transition(outcome, ResourceState.SETTLED)

        resource_operations_total.labels(type=resource.type, operation=operation.value).inc()
        resource_duration_seconds.labels(type=resource.type).observe(outcome.duration_s)
        self._log.info(
            "resource_settled",
            resource_id=resource.id,
            type=resource.type,
            operation=operation.value,
            attempts=outcome.attempts,
            duration_s=round(outcome.duration_s, 2),
        )
        self._events.emit(
            ResourceEvent(
                resource_id=resource.id,
                type=resource.type,
                state=ResourceState.SETTLED,
                operation=operation,
                properties=properties,
                outputs=outputs,
            )
        )

    def _fail(
        self,
        resource: Resource,
        outcome: ResourceOutcome,
        error: BaseException,
        properties: dict[str, Any],
        started: float | None = None,
    ) -> None:
        self._transition(outcome, ResourceState.FAILED)
        outcome.error = str(error) or type(error).__name__
        outcome.error_type = type(error).__name__
        if started is not None:
            outcome.duration_s = time.monotonic() - started
        if not resource.outputs.resolved:
            resource.outputs.fail(UpstreamFailed(resource.id, outcome.error))
        resource_operations_total.labels(type=resource.type, operation="Failed").inc()
        self._log.error(
            "resource_failed",
            resource_id=resource.id,
            type=resource.type,
            error_type=outcome.error_type,
            error=outcome.error,
            attempts=outcome.attempts,
        )
        self._events.emit(
            ResourceEvent(
                resource_id=resource.id,
                type=resource.type,
                state=ResourceState.FAILED,
                properties=properties,
                error=error,
            )
        )

    def _block(self, resource: Resource, outcome: ResourceOutcome, root_cause: str) -> None:
        self._transition(outcome, ResourceState.BLOCKED)
        outcome.blocked_by = root_cause
        outcome.error = f"blocked by {root_cause}"
        error = UpstreamFailed(root_cause, "blocked")
        if not resource.outputs.resolved:
            resource.outputs.fail(error)
        self._log.warning("resource_blocked", resource_id=resource.id, root_cause=root_cause)
        self._events.emit(
            ResourceEvent(
                resource_id=resource.id,
                type=resource.type,
                state=ResourceState.BLOCKED,
                error=error,
            )
        )

    @staticmethod
    def _transition(outcome: ResourceOutcome, target: ResourceState) -> None:
        if not can_transition(outcome.state, target):
            raise RuntimeError(f"Illegal transition for '{outcome.resource_id}': {outcome.state} -> {target}")
        outcome.state = target
        outcome.history.append(target)

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    async def destroy(self, plan: ConvergencePlan) -> ApplyReport:
        """Tear the stack down in reverse plan order, failing closed.

        A refresh pass first reads every resource in plan order so deferred
        references (resource group names, scopes, kubeconfigs) can be
        resolved from live state.  Deletes then run sequentially from the
        leaves; before each delete every dependent is re-read and the
        destroy stops with DependentStillPresent if any still exists.
        """
        self._preflight(plan)
        report = self._new_report(plan)
        present: dict[str, dict[str, Any]] = {}

        for rid in plan:
            resource = self._store.get(rid)
            started = time.monotonic()
            try:
                properties = await self._refresh(resource)
            except AzConvergeError as exc:
                outcome = report.outcomes[rid]
                self._transition(outcome, ResourceState.RESOLVING)
                self._fail(resource, outcome, exc, {}, started)
                break
            if properties is not None:
                present[rid] = properties

        teardown = [] if report.failed else list(reversed(plan.order))
        for rid in teardown:
            if self._cancel.is_set():
                report.cancelled = True
                break
            resource = self._store.get(rid)
            outcome = report.outcomes[rid]
            self._transition(outcome, ResourceState.RESOLVING)
            started = time.monotonic()
            try:
                remaining = [dep for dep in plan.dependents(rid) if await self._is_present(dep, present)]
                if remaining:
                    raise DependentStillPresent(rid, remaining)
                if rid in present:
                    await self._delete(resource, present[rid])
                    operation = Operation.DELETE
                else:
                    operation = Operation.NOOP
            except (AzConvergeError, TimeoutError) as exc:
                self._fail(resource, outcome, exc, present.get(rid, {}), started)
                break
            self._transition(outcome, _OPERATION_STATE[operation])
            outcome.operation = operation
            outcome.duration_s = time.monotonic() - started
            self._transition(outcome, ResourceState.SETTLED)
            resource_operations_total.labels(type=resource.type, operation=operation.value).inc()
            self._log.info("resource_destroyed", resource_id=rid, operation=operation.value)

        stopped_at = next((rid for rid in report.failed), None) or ("cancelled" if report.cancelled else None)
        if stopped_at is not None:
            for rid, outcome in report.outcomes.items():
                if outcome.state == ResourceState.PENDING:
                    self._transition(outcome, ResourceState.BLOCKED)
                    outcome.blocked_by = stopped_at
                    outcome.error = f"blocked by {stopped_at}"

        report.finished_at = datetime.now(tz=UTC)
        return report

    async def _refresh(self, resource: Resource) -> dict[str, Any] | None:
        """Read live state for destroy; returns resolved properties when present."""
        try:
            async with asyncio.timeout(self.timeout_for(resource)):
                properties = await resolve_all(resource.properties)
                provider = self._providers.for_type(resource.type)
                if isinstance(provider, ComponentProvider):
                    exists = await provider.exists(resource, properties)
                    current: dict[str, Any] | None = {} if exists else None
                else:
                    current = await with_retries(
                        lambda: provider.read(resource.type, properties),
                        max_attempts=self._config.max_attempts,
                        base=self._config.backoff_base,
                        cap=self._config.backoff_max,
                        resource_id=resource.id,
                        resource_type=resource.type,
                    )
        except (UpstreamFailed, CredentialError, TimeoutError) as exc:
            self._log.warning("refresh_unaddressable", resource_id=resource.id, error=str(exc))
            current = None
            properties = {}

        if current is None:
            absent = UpstreamFailed(resource.id, "not present")
            resource.outputs.fail(absent)
            self._events.emit(
                ResourceEvent(resource_id=resource.id, type=resource.type, state=ResourceState.BLOCKED, error=absent)
            )
            return None
        resource.outputs.set(current)
        self._events.emit(
            ResourceEvent(
                resource_id=resource.id,
                type=resource.type,
                state=ResourceState.SETTLED,
                properties=properties,
                outputs=current,
            )
        )
        return properties

    async def _is_present(self, rid: str, present: dict[str, dict[str, Any]]) -> bool:
        if rid not in present:
            return False
        resource = self._store.get(rid)
        provider = self._providers.for_type(resource.type)
        if isinstance(provider, ComponentProvider):
            return await provider.exists(resource, present[rid])
        return await provider.read(resource.type, present[rid]) is not None

    async def _delete(self, resource: Resource, properties: dict[str, Any]) -> None:
        provider = self._providers.for_type(resource.type)
        timeout = self.timeout_for(resource)
        async with self._store.lease(resource.id):
            async with asyncio.timeout(timeout):
                if isinstance(provider, ComponentProvider):
                    await provider.destroy(resource, properties)
                else:
                    await with_retries(
                        lambda: provider.delete(resource.type, properties),
                        max_attempts=self._config.max_attempts,
                        base=self._config.backoff_base,
                        cap=self._config.backoff_max,
                        resource_id=resource.id,
                        resource_type=resource.type,
                    )
