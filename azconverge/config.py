"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re

from azconverge.models.config import (
    AppServiceConfig,
    AzureConfig,
    ClusterConfig,
    CredentialScope,
    EngineConfig,
    LogConfig,
    RegistryConfig,
    StackConfig,
    TargetPlatform,
    WorkloadConfig,
)


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"AZCONVERGE_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float, min_val: float | None = None) -> float:
    val = float(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    return val


def _env_list(key: str) -> list[str]:
    return [item.strip() for item in _env(key, "").split(",") if item.strip()]


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_log_format(value: str) -> str:
    valid = {"json", "console"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log format: {value}. Must be one of {valid}")
    return value.lower()


def _validate_platform(value: str) -> TargetPlatform:
    try:
        return TargetPlatform(value.lower())
    except ValueError:
        raise ValueError(f"Invalid platform: {value}. Must be one of {[p.value for p in TargetPlatform]}") from None


def _validate_scope(value: str) -> CredentialScope:
    try:
        return CredentialScope(value.lower())
    except ValueError:
        raise ValueError(f"Invalid credential scope: {value}. Must be 'admin' or 'user'") from None


def _validate_azure_name(value: str, kind: str, pattern: str = r"^[A-Za-z0-9][A-Za-z0-9_.()-]{0,89}$") -> str:
    if not re.match(pattern, value):
        raise ValueError(f"Invalid {kind} name: {value!r}")
    return value


def _validate_registry_name(value: str) -> str:
    # ACR names are globally unique, 5-50 alphanumerics.
    return _validate_azure_name(value, "container registry", r"^[A-Za-z0-9]{5,50}$")


def load_config() -> StackConfig:
    """Load configuration from AZCONVERGE_* environment variables."""
    return StackConfig(
        stack=_env("STACK", "dev"),
        project=_env("PROJECT", "microservices-demo"),
        platform=_validate_platform(_env("PLATFORM", "cluster")),
        location=_env("LOCATION", "eastus"),
        resource_group=_validate_azure_name(_env("RESOURCE_GROUP", "microservices-demo-rg"), "resource group"),
        cluster=ClusterConfig(
            name=_validate_azure_name(_env("CLUSTER_NAME", "microservices-aks"), "cluster"),
            dns_prefix=_env("DNS_PREFIX", "microservices"),
            node_count=_env_int("NODE_COUNT", 1, min_val=1, max_val=100),
            node_size=_env("NODE_SIZE", "Standard_D2s_v5"),
            credential_scope=_validate_scope(_env("CREDENTIAL_SCOPE", "user")),
        ),
        registry=RegistryConfig(
            name=_validate_registry_name(_env("ACR_NAME", "microservicesacr")),
            sku=_env("ACR_SKU", "Basic"),
            admin_enabled=_env_bool("ACR_ADMIN_ENABLED", True),
        ),
        workloads=WorkloadConfig(
            enabled=_env_bool("WORKLOADS_ENABLED", True),
            namespace=_env("NAMESPACE", "microservices-demo"),
            manifest_files=_env_list("MANIFEST_FILES"),
            image_tag=_env("IMAGE_TAG", "latest"),
            backend_replicas=_env_int("BACKEND_REPLICAS", 2, min_val=0, max_val=50),
            frontend_replicas=_env_int("FRONTEND_REPLICAS", 2, min_val=0, max_val=50),
        ),
        app_service=AppServiceConfig(
            plan_name=_env("APP_SERVICE_PLAN", "microservices-plan"),
            backend_app_name=_env("BACKEND_APP", "microservices-backend"),
            frontend_app_name=_env("FRONTEND_APP", "microservices-frontend"),
            sku=_env("APP_SERVICE_SKU", "B1"),
        ),
        engine=EngineConfig(
            max_concurrency=_env_int("MAX_CONCURRENCY", 8, min_val=1, max_val=32),
            cluster_timeout=_env_float("CLUSTER_TIMEOUT", 3600.0, min_val=1.0),
            leaf_timeout=_env_float("LEAF_TIMEOUT", 600.0, min_val=1.0),
            max_attempts=_env_int("MAX_ATTEMPTS", 5, min_val=1, max_val=10),
            backoff_base=_env_float("BACKOFF_BASE", 2.0, min_val=0.0),
            backoff_max=_env_float("BACKOFF_MAX", 60.0, min_val=0.0),
        ),
        azure=AzureConfig(
            subscription_id=_env("SUBSCRIPTION_ID", ""),
            arm_endpoint=_env("ARM_ENDPOINT", "https://management.azure.com"),
            arm_token=_env("ARM_TOKEN", ""),
            poll_interval=_env_float("POLL_INTERVAL", 15.0, min_val=0.0),
            request_timeout=_env_float("REQUEST_TIMEOUT", 60.0, min_val=1.0),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
            format=_validate_log_format(_env("LOG_FORMAT", "json")),
        ),
        metrics_port=_env_int("METRICS_PORT", 0, min_val=0, max_val=65535),
    )
