"""Unit tests for workload manifest construction and loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from azconverge.deferred import DeferredValue, find_deferred, resolve_all
from azconverge.errors import ConfigurationError
from azconverge.models.config import WorkloadConfig
from azconverge.stack.manifests import (
    BACKEND_DEPLOYMENT_ID,
    FRONTEND_DEPLOYMENT_ID,
    builtin_workloads,
    frontend_address,
    load_workloads,
)


def _login_server() -> DeferredValue[str]:
    async def _resolve() -> str:
        return "microservicesacr.azurecr.io"

    return DeferredValue(("container-registry",), _resolve)


class TestBuiltinWorkloads:
    def test_entries_and_dependencies(self) -> None:
        workloads = builtin_workloads(WorkloadConfig(backend_replicas=3), _login_server(), "dev")
        by_id = {w["id"]: w for w in workloads}
        assert list(by_id) == [
            "microservices-namespace",
            "app-config",
            "backend-deployment",
            "backend-service",
            "frontend-deployment",
            "frontend-service",
        ]
        assert by_id[FRONTEND_DEPLOYMENT_ID]["dependsOn"] == [
            "microservices-namespace",
            "backend-service",
            "app-config",
        ]
        assert by_id[BACKEND_DEPLOYMENT_ID]["manifest"]["spec"]["replicas"] == 3
        assert by_id["frontend-service"]["manifest"]["spec"]["type"] == "LoadBalancer"

    async def test_images_reference_the_registry(self) -> None:
        workloads = builtin_workloads(WorkloadConfig(image_tag="v2"), _login_server(), "dev")
        deferred = dict(find_deferred(workloads))
        assert all(d.dependencies == frozenset({"container-registry"}) for d in deferred.values())
        backend = await resolve_all(workloads[2]["manifest"])
        image = backend["spec"]["template"]["spec"]["containers"][0]["image"]
        assert image == "microservicesacr.azurecr.io/backend-service:v2"


class TestLoadWorkloads:
    async def test_placeholders_and_order_dependencies(self, tmp_path: Path) -> None:
        manifest = tmp_path / "app.yaml"
        manifest.write_text(
            """
apiVersion: v1
kind: Namespace
metadata:
  name: shop
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: api
  namespace: shop
spec:
  template:
    spec:
      containers:
        - name: api
          image: ${ACR_LOGIN_SERVER}/api:${IMAGE_TAG}
          args: ["--label={app}"]
""",
            encoding="utf-8",
        )
        workloads = load_workloads([str(manifest)], _login_server(), "1.4.0")
        assert [w["id"] for w in workloads] == ["namespace-shop", "deployment-api"]
        assert workloads[1]["dependsOn"] == ["namespace-shop"]
        resolved = await resolve_all(workloads[1]["manifest"])
        container = resolved["spec"]["template"]["spec"]["containers"][0]
        assert container["image"] == "microservicesacr.azurecr.io/api:1.4.0"
        assert container["args"] == ["--label={app}"]

    def test_duplicate_manifest_is_rejected(self, tmp_path: Path) -> None:
        manifest = tmp_path / "dup.yaml"
        manifest.write_text("kind: Service\napiVersion: v1\nmetadata: {name: a}\n---\n"
                            "kind: Service\napiVersion: v1\nmetadata: {name: a}\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="more than once"):
            load_workloads([str(manifest)], "acr.io", "latest")

    @pytest.mark.parametrize(
        "content",
        ["kind: Service\nmetadata: {name: a}\n", "apiVersion: v1\nkind: Service\nmetadata: {}\n", "a: [b\n"],
    )
    def test_invalid_documents_are_configuration_errors(self, tmp_path: Path, content: str) -> None:
        manifest = tmp_path / "bad.yaml"
        manifest.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_workloads([str(manifest)], "acr.io", "latest")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_workloads([str(tmp_path / "absent.yaml")], "acr.io", "latest")


class TestFrontendAddress:
    def test_ingress_ip(self) -> None:
        outputs = {
            "backend-service": {"spec": {"type": "ClusterIP"}},
            "frontend-service": {
                "spec": {"type": "LoadBalancer"},
                "status": {"loadBalancer": {"ingress": [{"ip": "20.1.2.3"}]}},
            },
        }
        assert frontend_address(outputs) == "20.1.2.3"

    def test_hostname_preferred(self) -> None:
        outputs = {
            "svc": {
                "spec": {"type": "LoadBalancer"},
                "status": {"loadBalancer": {"ingress": [{"hostname": "lb.example.com", "ip": "1.1.1.1"}]}},
            }
        }
        assert frontend_address(outputs) == "lb.example.com"

    def test_pending_without_ingress(self) -> None:
        assert frontend_address({"svc": {"spec": {"type": "LoadBalancer"}, "status": {}}}) == "Pending..."
