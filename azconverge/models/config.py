"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class TargetPlatform(StrEnum):
    """Where the demo services are hosted."""

    CLUSTER = "cluster"
    APP_SERVICE = "app-service"


class CredentialScope(StrEnum):
    """Which kubeconfig the credential resolver requests for the cluster."""

    ADMIN = "admin"
    USER = "user"


@dataclass
class ClusterConfig:
    """AKS cluster shape."""

    name: str = "microservices-aks"
    dns_prefix: str = "microservices"
    node_count: int = 1
    node_size: str = "Standard_D2s_v5"
    credential_scope: CredentialScope = CredentialScope.USER


@dataclass
class RegistryConfig:
    """Azure Container Registry configuration."""

    name: str = "microservicesacr"
    sku: str = "Basic"
    admin_enabled: bool = True


@dataclass
class WorkloadConfig:
    """Second-stage workload set applied against the cluster."""

    enabled: bool = True
    namespace: str = "microservices-demo"
    manifest_files: list[str] = field(default_factory=list)
    image_tag: str = "latest"
    backend_replicas: int = 2
    frontend_replicas: int = 2


@dataclass
class AppServiceConfig:
    """App Service platform configuration."""

    plan_name: str = "microservices-plan"
    backend_app_name: str = "microservices-backend"
    frontend_app_name: str = "microservices-frontend"
    sku: str = "B1"


@dataclass
class EngineConfig:
    """Convergence engine tuning."""

    max_concurrency: int = 8
    cluster_timeout: float = 3600.0
    leaf_timeout: float = 600.0
    max_attempts: int = 5
    backoff_base: float = 2.0
    backoff_max: float = 60.0


@dataclass
class AzureConfig:
    """Azure Resource Manager access."""

    subscription_id: str = ""
    arm_endpoint: str = "https://management.azure.com"
    arm_token: str = ""
    poll_interval: float = 15.0
    request_timeout: float = 60.0


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"
    format: str = "json"


@dataclass
class StackConfig:
    """Top-level azconverge configuration."""

    stack: str = "dev"
    project: str = "microservices-demo"
    platform: TargetPlatform = TargetPlatform.CLUSTER
    location: str = "eastus"
    resource_group: str = "microservices-demo-rg"
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    workloads: WorkloadConfig = field(default_factory=WorkloadConfig)
    app_service: AppServiceConfig = field(default_factory=AppServiceConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    azure: AzureConfig = field(default_factory=AzureConfig)
    log: LogConfig = field(default_factory=LogConfig)
    metrics_port: int = 0
