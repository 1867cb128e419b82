"""Unit tests for KubernetesProvider with mocked kubernetes-asyncio APIs."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from azconverge.errors import ProviderFatalError, ProviderTransientError
from azconverge.providers.kubernetes import SERVICE_TYPE, KubernetesProvider, load_balancer_ready, type_tag

DEPLOYMENT = "kubernetes:apps/v1:Deployment"
NAMESPACE = "kubernetes:core/v1:Namespace"


def _provider() -> tuple[KubernetesProvider, MagicMock, MagicMock]:
    api_client = MagicMock()
    api_client.sanitize_for_serialization.side_effect = lambda obj: obj
    api_client.close = AsyncMock()
    provider = KubernetesProvider(api_client, delete_poll_interval=0.0, ready_poll_interval=0.0)
    core, apps = MagicMock(), MagicMock()
    provider._apis = {"core": core, "apps": apps}
    return provider, core, apps


def _deployment(replicas: int = 2) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "backend", "namespace": "demo"},
        "spec": {"replicas": replicas},
    }


class TestTypeTag:
    @pytest.mark.parametrize(
        ("manifest", "expected"),
        [
            ({"apiVersion": "v1", "kind": "Service"}, "kubernetes:core/v1:Service"),
            ({"apiVersion": "apps/v1", "kind": "Deployment"}, "kubernetes:apps/v1:Deployment"),
        ],
    )
    def test_type_tag(self, manifest: dict[str, str], expected: str) -> None:
        assert type_tag(manifest) == expected


class TestKubernetesProvider:
    async def test_read_missing_object_returns_none(self) -> None:
        provider, _, apps = _provider()
        apps.read_namespaced_deployment = AsyncMock(side_effect=ApiException(status=404, reason="Not Found"))
        assert await provider.read(DEPLOYMENT, _deployment()) is None
        apps.read_namespaced_deployment.assert_awaited_once_with("backend", "demo")

    async def test_cluster_scoped_read_has_no_namespace(self) -> None:
        provider, core, _ = _provider()
        core.read_namespace = AsyncMock(return_value={"metadata": {"name": "demo"}})
        state = await provider.read(NAMESPACE, {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "demo"}})
        assert state == {"metadata": {"name": "demo"}}
        core.read_namespace.assert_awaited_once_with("demo")

    async def test_create_passes_namespace_and_manifest(self) -> None:
        provider, _, apps = _provider()
        manifest = _deployment()
        apps.create_namespaced_deployment = AsyncMock(return_value=manifest)
        assert await provider.create(DEPLOYMENT, manifest) == manifest
        apps.create_namespaced_deployment.assert_awaited_once_with("demo", manifest)

    async def test_update_is_a_merge_patch(self) -> None:
        provider, _, apps = _provider()
        manifest = _deployment(replicas=3)
        apps.patch_namespaced_deployment = AsyncMock(return_value=manifest)
        await provider.update(DEPLOYMENT, manifest, _deployment())
        apps.patch_namespaced_deployment.assert_awaited_once_with(
            "backend", "demo", manifest, _content_type="application/merge-patch+json"
        )

    async def test_server_error_is_transient(self) -> None:
        provider, _, apps = _provider()
        apps.create_namespaced_deployment = AsyncMock(side_effect=ApiException(status=500, reason="Internal"))
        with pytest.raises(ProviderTransientError) as exc_info:
            await provider.create(DEPLOYMENT, _deployment())
        assert exc_info.value.status_code == 500

    async def test_invalid_manifest_is_fatal(self) -> None:
        provider, _, apps = _provider()
        apps.create_namespaced_deployment = AsyncMock(side_effect=ApiException(status=422, reason="Unprocessable"))
        with pytest.raises(ProviderFatalError):
            await provider.create(DEPLOYMENT, _deployment())

    async def test_connection_error_is_transient(self) -> None:
        provider, _, apps = _provider()
        apps.read_namespaced_deployment = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(ProviderTransientError, match="connection error"):
            await provider.read(DEPLOYMENT, _deployment())

    async def test_delete_waits_for_finalizers(self) -> None:
        provider, _, apps = _provider()
        apps.delete_namespaced_deployment = AsyncMock(return_value=None)
        apps.read_namespaced_deployment = AsyncMock(
            side_effect=[_deployment(), ApiException(status=404, reason="Not Found")]
        )
        await provider.delete(DEPLOYMENT, _deployment())
        assert apps.read_namespaced_deployment.await_count == 2

    async def test_delete_of_absent_object_is_not_an_error(self) -> None:
        provider, _, apps = _provider()
        apps.delete_namespaced_deployment = AsyncMock(side_effect=ApiException(status=404, reason="Not Found"))
        await provider.delete(DEPLOYMENT, _deployment())

    async def test_unsupported_kind_is_fatal(self) -> None:
        provider, _, _ = _provider()
        with pytest.raises(ProviderFatalError, match="Unsupported"):
            await provider.read("kubernetes:batch/v1:CronJob", {"metadata": {"name": "x"}})

    async def test_missing_name_is_fatal(self) -> None:
        provider, _, _ = _provider()
        with pytest.raises(ProviderFatalError, match="metadata.name"):
            await provider.read(DEPLOYMENT, {"metadata": {}})

    def test_desired_state_ignores_status_and_type_fields(self) -> None:
        provider, _, _ = _provider()
        desired = provider.desired_state(DEPLOYMENT, {**_deployment(), "status": {"readyReplicas": 2}})
        assert desired == {"metadata": {"name": "backend", "namespace": "demo"}, "spec": {"replicas": 2}}

    async def test_close_releases_the_api_client(self) -> None:
        provider, _, _ = _provider()
        await provider.close()
        provider._api_client.close.assert_awaited_once()


def _service(service_type: str = "LoadBalancer", ingress: list[dict[str, str]] | None = None) -> dict[str, Any]:
    service: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": "frontend", "namespace": "demo"},
        "spec": {"type": service_type},
    }
    if ingress is not None:
        service["status"] = {"loadBalancer": {"ingress": ingress}}
    return service


class TestLoadBalancerReadiness:
    def test_cluster_ip_service_is_ready_immediately(self) -> None:
        assert load_balancer_ready(SERVICE_TYPE, _service("ClusterIP"))

    def test_load_balancer_without_ingress_is_not_ready(self) -> None:
        assert not load_balancer_ready(SERVICE_TYPE, _service())
        assert not load_balancer_ready(SERVICE_TYPE, _service(ingress=[]))

    def test_hostname_or_ip_counts_as_an_address(self) -> None:
        assert load_balancer_ready(SERVICE_TYPE, _service(ingress=[{"ip": "20.1.2.3"}]))
        assert load_balancer_ready(SERVICE_TYPE, _service(ingress=[{"hostname": "lb.example.com"}]))

    def test_other_kinds_are_always_ready(self) -> None:
        assert load_balancer_ready(DEPLOYMENT, _deployment())

    async def test_wait_ready_polls_until_the_address_appears(self) -> None:
        provider, core, _ = _provider()
        core.read_namespaced_service = AsyncMock(
            side_effect=[_service(), _service(ingress=[{"ip": "20.1.2.3"}])],
        )
        state = await provider.wait_ready(SERVICE_TYPE, _service(), _service())
        assert state["status"]["loadBalancer"]["ingress"][0]["ip"] == "20.1.2.3"
        assert core.read_namespaced_service.await_count == 2
