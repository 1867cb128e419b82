"""Credential/Secret Resolver.

Listens on the engine's EventBus.  When a cluster-class resource settles it
fetches the cluster kubeconfig (admin or user scope); when a registry with
``adminUserEnabled`` settles it fetches the registry admin credentials.
Each fetch runs as a background task and resolves a per-resource
ResolutionCell, so consumers (DeferredValues in the workload set or web app
declarations) suspend until the bundle is ready and never see a partial one.

Bundles are cached for the process lifetime.  A later ``Created`` settlement
of an already-resolved resource means it was recreated, which invalidates
the cached bundle and triggers a fresh fetch.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
import yaml

from azconverge.deferred import DeferredValue, ResolutionCell
from azconverge.engine.events import EventBus, ResourceEvent
from azconverge.engine.retry import with_retries
from azconverge.errors import (
    CredentialDecodeError,
    CredentialError,
    NoCredentialsReturned,
    ProviderError,
    UpstreamFailed,
)
from azconverge.models.config import CredentialScope, EngineConfig
from azconverge.models.resources import Operation, ResourceState
from azconverge.observability.metrics import credential_fetches_total
from azconverge.providers.base import CredentialSource

_log = structlog.get_logger(component="credentials")

CLUSTER_TYPES = frozenset({"azure:containerservice/ManagedCluster"})
REGISTRY_TYPES = frozenset({"azure:containerregistry/Registry"})


class CredentialKind(StrEnum):
    CLUSTER = "cluster"
    REGISTRY = "registry"


@dataclass(frozen=True)
class CredentialBundle:
    """A resolved credential.  ``raw`` and ``descriptor`` are secret."""

    resource_id: str
    kind: CredentialKind
    scope: str
    raw: str = field(repr=False)
    descriptor: dict[str, Any] = field(repr=False)
    resolved_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


def decode_kubeconfig(payload: str | None) -> dict[str, Any]:
    """Decode a base64 kubeconfig payload into a connection descriptor.

    Returns ``{"kubeconfig": <parsed dict>, "context": str, "server": str}``.

    Raises:
        CredentialDecodeError: payload missing, not base64, not UTF-8,
            not YAML, or without any cluster entry.
    """
    if not payload:
        raise CredentialDecodeError("Kubeconfig value is empty")
    try:
        text = base64.b64decode(payload, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise CredentialDecodeError(f"Kubeconfig payload is not valid base64 UTF-8: {exc}") from exc
    try:
        config = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CredentialDecodeError(f"Kubeconfig payload is not valid YAML: {exc}") from exc
    if not isinstance(config, dict) or not config.get("clusters"):
        raise CredentialDecodeError("Kubeconfig payload contains no clusters")

    context_name = str(config.get("current-context") or "")
    cluster_name = ""
    for ctx in config.get("contexts") or []:
        if ctx.get("name") == context_name:
            cluster_name = (ctx.get("context") or {}).get("cluster", "")
            break
    clusters = config["clusters"]
    match = next((c for c in clusters if c.get("name") == cluster_name), clusters[0])
    server = str((match.get("cluster") or {}).get("server", ""))
    return {"kubeconfig": config, "context": context_name, "server": server}


class CredentialResolver:
    """Fetches, decodes and caches credentials for settled resources."""

    def __init__(
        self,
        source: CredentialSource,
        scope: CredentialScope = CredentialScope.USER,
        engine_config: EngineConfig | None = None,
    ) -> None:
        self._source = source
        self._scope = scope
        self._engine_config = engine_config or EngineConfig()
        self._cells: dict[str, ResolutionCell[CredentialBundle]] = {}
        self._inflight: dict[str, asyncio.Task[None]] = {}

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self.on_event)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def on_event(self, event: ResourceEvent) -> None:
        if event.type in CLUSTER_TYPES:
            kind = CredentialKind.CLUSTER
        elif event.type in REGISTRY_TYPES:
            kind = CredentialKind.REGISTRY
        else:
            return

        cell = self._cell(event.resource_id)
        if event.state in (ResourceState.FAILED, ResourceState.BLOCKED):
            if not cell.resolved:
                cell.fail(UpstreamFailed(event.resource_id, str(event.error or event.state)))
            return
        if event.state != ResourceState.SETTLED:
            return

        if kind == CredentialKind.REGISTRY and not _admin_enabled(event.properties):
            if not cell.resolved:
                cell.fail(CredentialError(f"Registry '{event.resource_id}' does not have the admin user enabled"))
            return

        if cell.resolved or event.resource_id in self._inflight:
            if event.operation != Operation.CREATE:
                return
            _log.info("credential_invalidated_on_recreate", resource_id=event.resource_id)
            self.invalidate(event.resource_id)

        self._inflight[event.resource_id] = asyncio.create_task(
            self._fetch(event.resource_id, kind, event.properties),
            name=f"credentials:{event.resource_id}",
        )

    async def _fetch(self, resource_id: str, kind: CredentialKind, properties: dict[str, Any]) -> None:
        cell = self._cell(resource_id)
        try:
            bundle = await with_retries(
                lambda: self._load(resource_id, kind, properties),
                max_attempts=self._engine_config.max_attempts,
                base=self._engine_config.backoff_base,
                cap=self._engine_config.backoff_max,
                resource_id=resource_id,
                resource_type=f"credentials:{kind}",
            )
        except (CredentialError, ProviderError) as exc:
            credential_fetches_total.labels(kind=kind.value, outcome="error").inc()
            _log.error(
                "credential_fetch_failed",
                resource_id=resource_id,
                kind=kind.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            cell.fail(exc)
        else:
            credential_fetches_total.labels(kind=kind.value, outcome="ok").inc()
            _log.info("credential_resolved", resource_id=resource_id, kind=kind.value, scope=bundle.scope)
            cell.set(bundle)
        finally:
            if self._inflight.get(resource_id) is asyncio.current_task():
                del self._inflight[resource_id]

    async def _load(self, resource_id: str, kind: CredentialKind, properties: dict[str, Any]) -> CredentialBundle:
        if kind == CredentialKind.CLUSTER:
            payloads = await self._source.list_cluster_credentials(properties, self._scope.value)
            if not payloads:
                raise NoCredentialsReturned(f"No kubeconfig returned for cluster '{resource_id}'")
            raw = payloads[0]
            return CredentialBundle(
                resource_id=resource_id,
                kind=kind,
                scope=self._scope.value,
                raw=raw,
                descriptor=decode_kubeconfig(raw),
            )

        creds = await self._source.list_registry_credentials(properties)
        if not creds.passwords:
            raise NoCredentialsReturned(f"No admin passwords returned for registry '{resource_id}'")
        if not creds.username:
            raise CredentialDecodeError(f"Registry '{resource_id}' returned a password without a username")
        return CredentialBundle(
            resource_id=resource_id,
            kind=kind,
            scope="admin",
            raw=creds.passwords[0],
            descriptor={"username": creds.username, "password": creds.passwords[0]},
        )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _cell(self, resource_id: str) -> ResolutionCell[CredentialBundle]:
        cell = self._cells.get(resource_id)
        if cell is None:
            cell = self._cells[resource_id] = ResolutionCell(f"credentials of {resource_id}")
        return cell

    async def bundle(self, resource_id: str) -> CredentialBundle:
        """Suspend until the bundle for ``resource_id`` resolves; cached afterwards."""
        return await self._cell(resource_id).wait()

    def cached(self, resource_id: str) -> CredentialBundle | None:
        cell = self._cells.get(resource_id)
        if cell is None or not cell.resolved or cell.failed:
            return None
        return cell.peek()

    def invalidate(self, resource_id: str) -> None:
        """Drop the cached bundle so the next settlement fetches again."""
        task = self._inflight.pop(resource_id, None)
        if task is not None and not task.done():
            task.cancel()
        cell = self._cells.get(resource_id)
        if cell is not None and cell.resolved:
            cell.reset()

    # ------------------------------------------------------------------
    # Deferred references
    # ------------------------------------------------------------------

    def kubeconfig(self, cluster_id: str) -> DeferredValue[dict[str, Any]]:
        """Connection descriptor of ``cluster_id``, resolved after it settles."""

        async def _resolve() -> dict[str, Any]:
            return (await self.bundle(cluster_id)).descriptor

        return DeferredValue((cluster_id,), _resolve, f"{cluster_id}.kubeconfig")

    def raw_kubeconfig(self, cluster_id: str) -> DeferredValue[str]:
        """Decoded kubeconfig YAML text of ``cluster_id``.  Secret."""

        async def _resolve() -> str:
            bundle = await self.bundle(cluster_id)
            return base64.b64decode(bundle.raw).decode("utf-8")

        return DeferredValue((cluster_id,), _resolve, f"{cluster_id}.kubeconfig.raw")

    def registry_login(self, registry_id: str) -> DeferredValue[dict[str, Any]]:
        """``{"username", "password"}`` of ``registry_id``'s admin user."""

        async def _resolve() -> dict[str, Any]:
            return (await self.bundle(registry_id)).descriptor

        return DeferredValue((registry_id,), _resolve, f"{registry_id}.credentials")

    async def close(self) -> None:
        tasks = [t for t in self._inflight.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()


def _admin_enabled(properties: dict[str, Any]) -> bool:
    return bool((properties.get("properties") or {}).get("adminUserEnabled"))
