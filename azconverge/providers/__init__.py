"""Providers: the remote APIs the convergence engine drives.

Submodules:
    base        -- ResourceProvider / ComponentProvider / CredentialSource ABCs
                   and the type-routing ProviderRegistry.
    azure       -- Azure Resource Manager REST provider (httpx).
    kubernetes  -- Namespaced workload provider (kubernetes-asyncio).
"""

from azconverge.providers.base import (
    ComponentProvider,
    ComponentResult,
    CredentialSource,
    ProviderRegistry,
    RegistryCredentials,
    ResourceProvider,
)

__all__ = [
    "ComponentProvider",
    "ComponentResult",
    "CredentialSource",
    "ProviderRegistry",
    "RegistryCredentials",
    "ResourceProvider",
]
