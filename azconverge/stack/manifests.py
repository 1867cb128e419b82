"""Workload manifests for the cluster platform.

Either the built-in demo set (namespace, config map, backend and frontend
deployments and services) or manifests loaded from YAML files.  Each entry
is ``{"id", "manifest", "dependsOn"}``; container images reference the
registry login server through a DeferredValue so the workload set picks up
an inferred edge to the registry.

File manifests may use two placeholders in any string value:

    ${ACR_LOGIN_SERVER}   -- registry login server
    ${IMAGE_TAG}          -- configured image tag
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from azconverge.deferred import DeferredValue, interpolate
from azconverge.errors import ConfigurationError
from azconverge.models.config import WorkloadConfig

NAMESPACE_ID = "microservices-namespace"
CONFIG_MAP_ID = "app-config"
BACKEND_DEPLOYMENT_ID = "backend-deployment"
BACKEND_SERVICE_ID = "backend-service"
FRONTEND_DEPLOYMENT_ID = "frontend-deployment"
FRONTEND_SERVICE_ID = "frontend-service"

BACKEND_PORT = 3001
FRONTEND_PORT = 3000

_LOGIN_SERVER = "${ACR_LOGIN_SERVER}"
_IMAGE_TAG = "${IMAGE_TAG}"


def builtin_workloads(
    config: WorkloadConfig,
    login_server: DeferredValue[str] | str,
    environment: str,
) -> list[dict[str, Any]]:
    """The demo microservices, in apply order."""
    namespace = config.namespace
    backend_url = f"http://backend:{BACKEND_PORT}"
    return [
        _entry(
            NAMESPACE_ID,
            {
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {"name": namespace, "labels": {"name": namespace, "environment": environment}},
            },
        ),
        _entry(
            CONFIG_MAP_ID,
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": "app-config", "namespace": namespace, "labels": {"app": "microservices-demo"}},
                "data": {"BACKEND_URL": backend_url, "NODE_ENV": "production", "LOG_LEVEL": "info"},
            },
            NAMESPACE_ID,
        ),
        _entry(
            BACKEND_DEPLOYMENT_ID,
            _deployment(
                "backend",
                namespace,
                config.backend_replicas,
                interpolate("{}/backend-service:{}", login_server, config.image_tag),
                BACKEND_PORT,
                [{"name": "PORT", "value": str(BACKEND_PORT)}, {"name": "NODE_ENV", "value": "production"}],
            ),
            NAMESPACE_ID,
            CONFIG_MAP_ID,
        ),
        _entry(
            BACKEND_SERVICE_ID,
            _service("backend", namespace, "ClusterIP", BACKEND_PORT, BACKEND_PORT),
            NAMESPACE_ID,
        ),
        _entry(
            FRONTEND_DEPLOYMENT_ID,
            _deployment(
                "frontend",
                namespace,
                config.frontend_replicas,
                interpolate("{}/frontend-service:{}", login_server, config.image_tag),
                FRONTEND_PORT,
                [
                    {"name": "PORT", "value": str(FRONTEND_PORT)},
                    {"name": "BACKEND_URL", "value": backend_url},
                    {"name": "NODE_ENV", "value": "production"},
                ],
            ),
            NAMESPACE_ID,
            BACKEND_SERVICE_ID,
            CONFIG_MAP_ID,
        ),
        _entry(
            FRONTEND_SERVICE_ID,
            _service("frontend", namespace, "LoadBalancer", 80, FRONTEND_PORT),
            NAMESPACE_ID,
        ),
    ]


def load_workloads(
    paths: list[str],
    login_server: DeferredValue[str] | str,
    image_tag: str,
) -> list[dict[str, Any]]:
    """Load manifests from YAML files; each document depends on the one before it."""
    workloads: list[dict[str, Any]] = []
    seen: set[str] = set()
    for raw_path in paths:
        path = Path(raw_path)
        try:
            documents = list(yaml.safe_load_all(path.read_text(encoding="utf-8")))
        except OSError as exc:
            raise ConfigurationError(f"Cannot read manifest file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Manifest file {path} is not valid YAML: {exc}") from exc

        for document in documents:
            if not document:
                continue
            if not isinstance(document, dict) or "kind" not in document or "apiVersion" not in document:
                raise ConfigurationError(f"Manifest in {path} has no apiVersion/kind")
            name = (document.get("metadata") or {}).get("name")
            if not name:
                raise ConfigurationError(f"{document['kind']} manifest in {path} has no metadata.name")
            workload_id = f"{str(document['kind']).lower()}-{name}"
            if workload_id in seen:
                raise ConfigurationError(f"Manifest '{workload_id}' is declared more than once")
            seen.add(workload_id)
            previous = [workloads[-1]["id"]] if workloads else []
            workloads.append(_entry(workload_id, substitute(document, login_server, image_tag), *previous))
    return workloads


def substitute(value: Any, login_server: DeferredValue[str] | str, image_tag: str) -> Any:
    """Replace registry placeholders; strings mentioning the login server become deferred."""
    if isinstance(value, dict):
        return {k: substitute(v, login_server, image_tag) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, login_server, image_tag) for v in value]
    if not isinstance(value, str):
        return value
    value = value.replace(_IMAGE_TAG, image_tag)
    if _LOGIN_SERVER not in value:
        return value
    parts = [part.replace("{", "{{").replace("}", "}}") for part in value.split(_LOGIN_SERVER)]
    return interpolate("{0}".join(parts), login_server)


def frontend_address(workload_outputs: dict[str, Any]) -> str:
    """Hostname or IP of the first LoadBalancer ingress, or ``Pending...``."""
    for outputs in workload_outputs.values():
        if not isinstance(outputs, dict):
            continue
        if (outputs.get("spec") or {}).get("type") != "LoadBalancer":
            continue
        ingress = ((outputs.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
        if ingress:
            return str(ingress[0].get("hostname") or ingress[0].get("ip") or "Pending...")
    return "Pending..."


def _entry(workload_id: str, manifest: dict[str, Any], *depends_on: str) -> dict[str, Any]:
    return {"id": workload_id, "manifest": manifest, "dependsOn": list(depends_on)}


def _deployment(
    app: str,
    namespace: str,
    replicas: int,
    image: DeferredValue[str],
    port: int,
    env: list[dict[str, str]],
) -> dict[str, Any]:
    labels = {"app": app, "version": "v1"}
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": app, "namespace": namespace, "labels": labels},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": app}},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [
                        {
                            "name": app,
                            "image": image,
                            "imagePullPolicy": "Always",
                            "ports": [{"containerPort": port, "name": "http", "protocol": "TCP"}],
                            "env": env,
                            "resources": {
                                "requests": {"memory": "128Mi", "cpu": "100m"},
                                "limits": {"memory": "256Mi", "cpu": "200m"},
                            },
                            "livenessProbe": _http_check(port, initial_delay=10, period=10, timeout=5, failures=3),
                            "readinessProbe": _http_check(port, initial_delay=5, period=5, timeout=3, failures=2),
                        }
                    ]
                },
            },
        },
    }


def _http_check(port: int, initial_delay: int, period: int, timeout: int, failures: int) -> dict[str, Any]:
    return {
        "httpGet": {"path": "/health", "port": port},
        "initialDelaySeconds": initial_delay,
        "periodSeconds": period,
        "timeoutSeconds": timeout,
        "failureThreshold": failures,
    }


def _service(app: str, namespace: str, service_type: str, port: int, target_port: int) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": app, "namespace": namespace, "labels": {"app": app}},
        "spec": {
            "type": service_type,
            "selector": {"app": app},
            "ports": [{"port": port, "targetPort": target_port, "protocol": "TCP", "name": "http"}],
        },
    }
