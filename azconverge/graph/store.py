"""Resource Declaration Store.

Holds the desired-state resource graph for one apply pass.  The store is
populated once, before planning; afterwards the only mutation is the
engine's write-once settlement of each resource's outputs.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from typing import Any

from azconverge.deferred import DeferredValue, ResolutionCell, output_ref
from azconverge.errors import DuplicateResource, LeaseConflict
from azconverge.models.resources import Resource, ResourceOptions


class ResourceStore:
    """Ordered, in-memory collection of resource declarations."""

    def __init__(self) -> None:
        self._resources: dict[str, Resource] = {}
        self._leases: dict[str, asyncio.Lock] = {}
        self._sealed = False

    # ------------------------------------------------------------------
    # Population
    # ------------------------------------------------------------------

    def declare(
        self,
        resource_id: str,
        resource_type: str,
        properties: dict[str, Any] | None = None,
        depends_on: list[str] | None = None,
        options: ResourceOptions | None = None,
    ) -> Resource:
        """Register a resource declaration and return it."""
        if self._sealed:
            raise RuntimeError("ResourceStore is sealed; declarations are closed")
        if resource_id in self._resources:
            raise DuplicateResource(resource_id)
        resource = Resource(
            id=resource_id,
            type=resource_type,
            properties=properties or {},
            depends_on=list(depends_on or []),
            options=options or ResourceOptions(),
        )
        self._resources[resource_id] = resource
        self._leases[resource_id] = asyncio.Lock()
        return resource

    def seal(self) -> None:
        """Close the store to further declarations."""
        self._sealed = True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, resource_id: str) -> Resource:
        return self._resources[resource_id]

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._resources

    def __iter__(self) -> Iterator[Resource]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    def ids(self) -> list[str]:
        """Resource ids in declaration order."""
        return list(self._resources)

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def output_cell(self, resource_id: str) -> ResolutionCell[dict[str, Any]]:
        return self._resources[resource_id].outputs

    def output(self, resource_id: str, path: str = "") -> DeferredValue[Any]:
        """A deferred reference to ``path`` inside ``resource_id``'s outputs.

        The referenced id does not need to be declared yet; dangling
        references are reported by the dependency resolver.
        """

        def _cell(rid: str) -> ResolutionCell[dict[str, Any]]:
            if rid not in self._resources:
                raise KeyError(rid)
            return self._resources[rid].outputs

        return output_ref(_cell, resource_id, path)

    async def outputs(self, resource_id: str) -> dict[str, Any]:
        """Suspend until ``resource_id`` settles, then return its outputs."""
        return await self._resources[resource_id].outputs.wait()

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lease(self, resource_id: str) -> AsyncIterator[Resource]:
        """Exclusive operation lease on ``resource_id``.

        Raises LeaseConflict immediately if another operation holds it.
        """
        lock = self._leases[resource_id]
        if lock.locked():
            raise LeaseConflict(resource_id)
        async with lock:
            yield self._resources[resource_id]
