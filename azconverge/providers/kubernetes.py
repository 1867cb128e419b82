"""Kubernetes provider for namespaced workloads, via kubernetes-asyncio.

Each workload resource's properties are a complete manifest
(``apiVersion``/``kind``/``metadata``/...).  Reads are typed GETs whose
result is sanitised back to a camelCase dict so drift detection compares
like with like; updates are JSON merge patches.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import aiohttp
import structlog
from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import config as k8s_config
from kubernetes_asyncio.client.exceptions import ApiException

from azconverge.errors import ProviderFatalError, ProviderTransientError
from azconverge.providers.base import ResourceProvider

_log = structlog.get_logger(component="providers.kubernetes")

_TRANSIENT_STATUS = frozenset({409, 429})
_MERGE_PATCH = "application/merge-patch+json"


@dataclass(frozen=True)
class _Kind:
    api: str  # "core" or "apps"
    suffix: str  # e.g. "config_map" -> read_namespaced_config_map
    namespaced: bool = True


K8S_KINDS: dict[str, _Kind] = {
    "kubernetes:core/v1:Namespace": _Kind("core", "namespace", namespaced=False),
    "kubernetes:core/v1:ConfigMap": _Kind("core", "config_map"),
    "kubernetes:core/v1:Secret": _Kind("core", "secret"),
    "kubernetes:core/v1:Service": _Kind("core", "service"),
    "kubernetes:core/v1:ServiceAccount": _Kind("core", "service_account"),
    "kubernetes:apps/v1:Deployment": _Kind("apps", "deployment"),
    "kubernetes:apps/v1:DaemonSet": _Kind("apps", "daemon_set"),
}

SERVICE_TYPE = "kubernetes:core/v1:Service"


def type_tag(manifest: dict[str, Any]) -> str:
    """Derive the resource type tag for a manifest.

    ``apiVersion: v1`` maps to the ``core`` group.
    """
    api_version = str(manifest.get("apiVersion", ""))
    kind = str(manifest.get("kind", ""))
    group_version = api_version if "/" in api_version else f"core/{api_version}"
    return f"kubernetes:{group_version}:{kind}"


def load_balancer_ready(resource_type: str, state: dict[str, Any]) -> bool:
    """A ``type: LoadBalancer`` Service is ready once it reports an ingress address."""
    if resource_type != SERVICE_TYPE or (state.get("spec") or {}).get("type") != "LoadBalancer":
        return True
    ingress = ((state.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
    return any(entry.get("ip") or entry.get("hostname") for entry in ingress if isinstance(entry, dict))


class KubernetesProvider(ResourceProvider):
    """ResourceProvider bound to one cluster through an ApiClient."""

    name = "kubernetes"

    def __init__(
        self,
        api_client: k8s_client.ApiClient,
        delete_poll_interval: float = 2.0,
        ready_poll_interval: float = 5.0,
    ) -> None:
        self._api_client = api_client
        self._delete_poll_interval = delete_poll_interval
        self.ready_poll_interval = ready_poll_interval
        self._apis: dict[str, Any] = {
            "core": k8s_client.CoreV1Api(api_client),
            "apps": k8s_client.AppsV1Api(api_client),
        }

    @classmethod
    async def from_descriptor(cls, descriptor: dict[str, Any]) -> KubernetesProvider:
        """Build a provider from a decoded kubeconfig connection descriptor."""
        configuration = k8s_client.Configuration()
        await k8s_config.load_kube_config_from_dict(
            descriptor["kubeconfig"],
            context=descriptor.get("context") or None,
            client_configuration=configuration,
        )
        _log.info("kubernetes_target_bound", server=descriptor.get("server", ""))
        return cls(k8s_client.ApiClient(configuration=configuration))

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def read(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any] | None:
        kind, name, namespace = self._address(resource_type, properties)
        args = (name, namespace) if kind.namespaced else (name,)
        try:
            obj = await self._call(kind, "read", *args)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise _classify(exc, "read", resource_type, name) from exc
        return self._to_dict(obj)

    async def create(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any]:
        kind, name, namespace = self._address(resource_type, properties)
        args: tuple[Any, ...] = (namespace, properties) if kind.namespaced else (properties,)
        try:
            obj = await self._call(kind, "create", *args)
        except ApiException as exc:
            raise _classify(exc, "create", resource_type, name) from exc
        return self._to_dict(obj)

    async def update(
        self,
        resource_type: str,
        properties: dict[str, Any],
        current: dict[str, Any],
    ) -> dict[str, Any]:
        kind, name, namespace = self._address(resource_type, properties)
        args: tuple[Any, ...] = (name, namespace, properties) if kind.namespaced else (name, properties)
        try:
            obj = await self._call(kind, "patch", *args, _content_type=_MERGE_PATCH)
        except ApiException as exc:
            raise _classify(exc, "patch", resource_type, name) from exc
        return self._to_dict(obj)

    async def delete(self, resource_type: str, properties: dict[str, Any]) -> None:
        kind, name, namespace = self._address(resource_type, properties)
        args = (name, namespace) if kind.namespaced else (name,)
        try:
            await self._call(kind, "delete", *args)
        except ApiException as exc:
            if exc.status == 404:
                return
            raise _classify(exc, "delete", resource_type, name) from exc
        # Deletion is asynchronous (finalizers, cascading); wait until the object is gone.
        while await self.read(resource_type, properties) is not None:
            await asyncio.sleep(self._delete_poll_interval)

    def desired_state(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in properties.items() if k not in ("apiVersion", "kind", "status")}

    def is_ready(self, resource_type: str, state: dict[str, Any]) -> bool:
        return load_balancer_ready(resource_type, state)

    async def close(self) -> None:
        await self._api_client.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _address(self, resource_type: str, properties: dict[str, Any]) -> tuple[_Kind, str, str]:
        kind = K8S_KINDS.get(resource_type)
        if kind is None:
            raise ProviderFatalError(f"Unsupported Kubernetes resource type '{resource_type}'")
        metadata = properties.get("metadata") or {}
        name = str(metadata.get("name", ""))
        if not name:
            raise ProviderFatalError(f"{resource_type} manifest is missing metadata.name")
        namespace = str(metadata.get("namespace") or "default")
        return kind, name, namespace

    async def _call(self, kind: _Kind, verb: str, *args: Any, **kwargs: Any) -> Any:
        scope = "namespaced_" if kind.namespaced else ""
        method = getattr(self._apis[kind.api], f"{verb}_{scope}{kind.suffix}")
        try:
            return await method(*args, **kwargs)
        except (aiohttp.ClientError, TimeoutError, OSError) as exc:
            raise ProviderTransientError(f"Kubernetes {verb} {kind.suffix} connection error: {exc}") from exc

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        data = self._api_client.sanitize_for_serialization(obj)
        return data if isinstance(data, dict) else {}


def _classify(
    exc: ApiException,
    verb: str,
    resource_type: str,
    name: str,
) -> ProviderTransientError | ProviderFatalError:
    status = int(exc.status or 0)
    message = f"Kubernetes {verb} {resource_type} '{name}' failed with {status}: {exc.reason}"
    if status in _TRANSIENT_STATUS or status >= 500:
        retry_after = None
        headers = exc.headers or {}
        if "Retry-After" in headers:
            try:
                retry_after = float(headers["Retry-After"])
            except ValueError:
                retry_after = None
        return ProviderTransientError(message, status_code=status, retry_after=retry_after)
    return ProviderFatalError(message, status_code=status)
