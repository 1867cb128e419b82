"""Workload Binding Layer.

The workload set is a single resource in the infrastructure graph whose
convergence is a second, nested pass: once the cluster credential resolves,
its manifests are declared into a fresh store, planned, and converged by a
second ConvergenceEngine against a Kubernetes provider bound to that
cluster.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from azconverge.engine.convergence import ConvergenceEngine
from azconverge.engine.events import EventBus
from azconverge.errors import ConfigurationError, WorkloadSetFailed
from azconverge.graph.models import ConvergencePlan
from azconverge.graph.resolver import DependencyResolver
from azconverge.graph.store import ResourceStore
from azconverge.models.config import EngineConfig
from azconverge.models.report import ApplyReport
from azconverge.models.resources import Operation, Resource, ResourceState
from azconverge.providers.base import ComponentProvider, ComponentResult, ProviderRegistry, ResourceProvider
from azconverge.providers.kubernetes import KubernetesProvider, type_tag

_log = structlog.get_logger(component="workloads")

WORKLOAD_SET_TYPE = "azconverge:kubernetes/WorkloadSet"

TargetFactory = Callable[[dict[str, Any]], Awaitable[ResourceProvider]]


class WorkloadBinding(ComponentProvider):
    """ComponentProvider for ``azconverge:kubernetes/WorkloadSet`` resources.

    Expected (resolved) properties::

        {
            "kubeconfig": {"kubeconfig": {...}, "context": "...", "server": "..."},
            "namespace": "microservices-demo",
            "workloads": [{"id": "...", "manifest": {...}, "dependsOn": [...]}, ...],
        }
    """

    name = "workloads"

    def __init__(
        self,
        target_factory: TargetFactory | None = None,
        engine_config: EngineConfig | None = None,
        events: EventBus | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._target_factory: TargetFactory = target_factory or KubernetesProvider.from_descriptor
        self._engine_config = engine_config or EngineConfig()
        self._events = events or EventBus()
        self._cancel = cancel_event or asyncio.Event()

    async def bind(
        self,
        descriptor: dict[str, Any],
        workloads: list[dict[str, Any]],
        namespace: str = "",
    ) -> tuple[ApplyReport, dict[str, dict[str, Any]]]:
        """Converge ``workloads`` against the cluster described by ``descriptor``.

        Returns the nested report and the outputs of every settled workload.
        """
        store, plan = self._plan(workloads, namespace)
        target = await self._target_factory(descriptor)
        try:
            report = await self._engine(store, target).apply(plan)
        finally:
            await target.close()

        outputs = {
            rid: store.output_cell(rid).peek()
            for rid, outcome in report.outcomes.items()
            if outcome.state == ResourceState.SETTLED
        }
        return report, outputs

    async def converge(self, resource: Resource, properties: dict[str, Any]) -> ComponentResult:
        descriptor = _descriptor(resource, properties)
        workloads = properties.get("workloads") or []
        log = _log.bind(resource_id=resource.id, server=descriptor.get("server", ""))
        log.info("workload_pass_started", workloads=len(workloads))

        report, outputs = await self.bind(descriptor, workloads, properties.get("namespace", ""))
        if not report.success:
            raise WorkloadSetFailed(resource.id, report)

        operation = aggregate_operation(report)
        log.info("workload_pass_finished", operation=operation.value, duration_s=round(report.duration_s, 2))
        return ComponentResult(operation=operation, outputs=outputs, report=report)

    async def exists(self, resource: Resource, properties: dict[str, Any]) -> bool:
        store, _ = self._plan(properties.get("workloads") or [], properties.get("namespace", ""))
        target = await self._target_factory(_descriptor(resource, properties))
        try:
            for workload in store:
                if await target.read(workload.type, workload.properties) is not None:
                    return True
            return False
        finally:
            await target.close()

    async def destroy(self, resource: Resource, properties: dict[str, Any]) -> None:
        store, plan = self._plan(properties.get("workloads") or [], properties.get("namespace", ""))
        target = await self._target_factory(_descriptor(resource, properties))
        try:
            report = await self._engine(store, target).destroy(plan)
        finally:
            await target.close()
        if not report.success:
            raise WorkloadSetFailed(resource.id, report)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _engine(self, store: ResourceStore, target: ResourceProvider) -> ConvergenceEngine:
        providers = ProviderRegistry()
        providers.register_prefix("kubernetes:", target)
        return ConvergenceEngine(
            store,
            providers,
            config=self._engine_config,
            events=self._events,
            cancel_event=self._cancel,
            name="workloads",
        )

    @staticmethod
    def _plan(workloads: list[dict[str, Any]], namespace: str) -> tuple[ResourceStore, ConvergencePlan]:
        store = ResourceStore()
        for workload in workloads:
            manifest = workload.get("manifest")
            if not workload.get("id") or not isinstance(manifest, dict):
                raise ConfigurationError(f"Workload entry is missing an id or manifest: {workload.get('id')!r}")
            store.declare(
                workload["id"],
                type_tag(manifest),
                with_namespace(manifest, namespace),
                depends_on=list(workload.get("dependsOn") or []),
            )
        store.seal()
        return store, DependencyResolver(store).plan()


def validate_workloads(workloads: list[dict[str, Any]]) -> ConvergencePlan:
    """Plan the nested graph from ids and ``dependsOn`` before anything is deployed.

    Manifest bodies may still hold deferred values at declaration time, so
    only ``apiVersion`` and ``kind`` are carried into the check.
    """
    skeleton = []
    for workload in workloads:
        manifest = workload.get("manifest")
        if isinstance(manifest, dict):
            manifest = {key: manifest[key] for key in ("apiVersion", "kind") if key in manifest}
        skeleton.append({**workload, "manifest": manifest})
    _, plan = WorkloadBinding._plan(skeleton, "")
    return plan


def aggregate_operation(report: ApplyReport) -> Operation:
    """NoOp if nothing changed, Created if everything was new, else Updated."""
    operations = {outcome.operation for outcome in report.outcomes.values()}
    if not operations or operations == {Operation.NOOP}:
        return Operation.NOOP
    if operations == {Operation.CREATE}:
        return Operation.CREATE
    return Operation.UPDATE


def with_namespace(manifest: dict[str, Any], namespace: str) -> dict[str, Any]:
    """Default ``metadata.namespace`` for namespaced kinds."""
    if not namespace or manifest.get("kind") == "Namespace":
        return manifest
    metadata = manifest.get("metadata") or {}
    if metadata.get("namespace"):
        return manifest
    return {**manifest, "metadata": {**metadata, "namespace": namespace}}


def _descriptor(resource: Resource, properties: dict[str, Any]) -> dict[str, Any]:
    descriptor = properties.get("kubeconfig")
    if not isinstance(descriptor, dict) or not descriptor.get("kubeconfig"):
        raise ConfigurationError(f"Workload set '{resource.id}' has no resolved cluster kubeconfig")
    return descriptor
