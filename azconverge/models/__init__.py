"""Core data structures for azconverge."""

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
from azconverge.models.report import ApplyReport, FailureChain, ResourceOutcome
from azconverge.models.resources import (
    Operation,
    Resource,
    ResourceOptions,
    ResourceState,
)

__all__ = [
    "AppServiceConfig",
    "ApplyReport",
    "AzureConfig",
    "ClusterConfig",
    "CredentialScope",
    "EngineConfig",
    "FailureChain",
    "LogConfig",
    "Operation",
    "RegistryConfig",
    "Resource",
    "ResourceOptions",
    "ResourceOutcome",
    "ResourceState",
    "StackConfig",
    "TargetPlatform",
    "WorkloadConfig",
]
