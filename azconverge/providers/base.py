"""Provider interfaces consumed by the convergence engine.

ResourceProvider   -- CRUD against a remote API, keyed by (type, scope, name)
                      which each provider derives from resolved properties.
ComponentProvider  -- A resource that expands into its own convergence pass
                      (the workload set); the engine delegates the
                      create/update/no-op decision to ``converge``.
CredentialSource   -- Lists cluster kubeconfigs and registry credentials.
ProviderRegistry   -- Routes resource types to providers.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from azconverge.models.report import ApplyReport
    from azconverge.models.resources import Operation, Resource


class ResourceProvider(ABC):
    """CRUD operations against a remote provider.

    Implementations translate transport errors into ProviderTransientError
    (retryable) or ProviderFatalError.  ``create`` must be idempotent: creating
    a resource that already matches is a no-op at the provider.
    """

    name: str = "provider"
    ready_poll_interval: float = 5.0

    @abstractmethod
    async def read(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any] | None:
        """Return the current remote state, or None when not found."""

    @abstractmethod
    async def create(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any]:
        """Create the resource and return its provider-reported state."""

    @abstractmethod
    async def update(
        self,
        resource_type: str,
        properties: dict[str, Any],
        current: dict[str, Any],
    ) -> dict[str, Any]:
        """Bring an existing resource to ``properties`` and return its new state."""

    @abstractmethod
    async def delete(self, resource_type: str, properties: dict[str, Any]) -> None:
        """Delete the resource.  Deleting an absent resource is not an error."""

    def desired_state(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any]:
        """The subset of ``properties`` compared against remote state for drift."""
        return properties

    def is_ready(self, resource_type: str, state: dict[str, Any]) -> bool:
        """Whether dependents can consume ``state``.  Default: as soon as it exists."""
        return True

    async def wait_ready(
        self,
        resource_type: str,
        properties: dict[str, Any],
        state: dict[str, Any],
    ) -> dict[str, Any]:
        """Re-read until ``is_ready``; the caller bounds this with its own timeout."""
        while not self.is_ready(resource_type, state):
            await asyncio.sleep(self.ready_poll_interval)
            current = await self.read(resource_type, properties)
            if current is not None:
                state = current
        return state

    async def close(self) -> None:
        """Release connections.  Default is a no-op."""


@dataclass
class ComponentResult:
    """What a ComponentProvider reports back to the engine."""

    operation: Operation
    outputs: dict[str, Any] = field(default_factory=dict)
    report: ApplyReport | None = None


class ComponentProvider(ABC):
    """A resource whose convergence is itself a nested pass."""

    name: str = "component"

    @abstractmethod
    async def converge(self, resource: Resource, properties: dict[str, Any]) -> ComponentResult:
        """Converge the component.  Raises ProviderError on failure."""

    @abstractmethod
    async def exists(self, resource: Resource, properties: dict[str, Any]) -> bool:
        """Whether any part of the component is still present remotely."""

    @abstractmethod
    async def destroy(self, resource: Resource, properties: dict[str, Any]) -> None:
        """Tear the component down."""


@dataclass
class RegistryCredentials:
    """Admin credentials of a container registry."""

    username: str = ""
    passwords: list[str] = field(default_factory=list)


class CredentialSource(ABC):
    """Credential endpoint of the subscription-level provider."""

    @abstractmethod
    async def list_cluster_credentials(self, properties: dict[str, Any], scope: str) -> list[str]:
        """Return zero or more base64-encoded kubeconfig payloads."""

    @abstractmethod
    async def list_registry_credentials(self, properties: dict[str, Any]) -> RegistryCredentials:
        """Return the registry admin username and passwords."""


class ProviderRegistry:
    """Maps resource type tags to providers.

    Routing is by exact type first, then by the longest registered prefix
    (``azure:`` or ``kubernetes:``).
    """

    def __init__(self) -> None:
        self._by_type: dict[str, ResourceProvider | ComponentProvider] = {}
        self._by_prefix: dict[str, ResourceProvider | ComponentProvider] = {}

    def register(self, resource_type: str, provider: ResourceProvider | ComponentProvider) -> None:
        self._by_type[resource_type] = provider

    def register_prefix(self, prefix: str, provider: ResourceProvider | ComponentProvider) -> None:
        self._by_prefix[prefix] = provider

    def for_type(self, resource_type: str) -> ResourceProvider | ComponentProvider:
        provider = self._by_type.get(resource_type)
        if provider is not None:
            return provider
        for prefix in sorted(self._by_prefix, key=len, reverse=True):
            if resource_type.startswith(prefix):
                return self._by_prefix[prefix]
        raise KeyError(f"No provider registered for resource type '{resource_type}'")
