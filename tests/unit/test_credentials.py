"""Unit tests for kubeconfig decoding and the event-driven CredentialResolver."""

from __future__ import annotations

import asyncio
import base64

import pytest

from azconverge.credentials.resolver import (
    CredentialKind,
    CredentialResolver,
    decode_kubeconfig,
)
from azconverge.engine.events import EventBus, ResourceEvent
from azconverge.errors import (
    CredentialDecodeError,
    CredentialError,
    NoCredentialsReturned,
    UpstreamFailed,
)
from azconverge.models.config import CredentialScope
from azconverge.models.resources import Operation, ResourceState
from azconverge.providers.base import RegistryCredentials
from fakes import KUBECONFIG, FakeAzure, encode_kubeconfig

CLUSTER = "azure:containerservice/ManagedCluster"
REGISTRY = "azure:containerregistry/Registry"


def _settled(rid: str, rtype: str, operation: Operation = Operation.CREATE, **props: object) -> ResourceEvent:
    return ResourceEvent(
        resource_id=rid,
        type=rtype,
        state=ResourceState.SETTLED,
        operation=operation,
        properties={"name": rid, "resourceGroupName": "rg", **props},
    )


# ---------------------------------------------------------------------------
# decode_kubeconfig
# ---------------------------------------------------------------------------


class TestDecodeKubeconfig:
    def test_valid_payload_yields_descriptor(self) -> None:
        descriptor = decode_kubeconfig(encode_kubeconfig())
        assert descriptor["context"] == "microservices-aks"
        assert descriptor["server"] == "https://microservices-aks.hcp.eastus.azmk8s.io:443"
        assert descriptor["kubeconfig"]["kind"] == "Config"

    def test_first_cluster_used_without_matching_context(self) -> None:
        config = {**KUBECONFIG, "current-context": "other"}
        assert decode_kubeconfig(encode_kubeconfig(config))["server"].startswith("https://microservices-aks")

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            "",
            "not base64 at all!",
            base64.b64encode(b"\xff\xfe\xfd").decode(),
            base64.b64encode(b"key: [unterminated").decode(),
            base64.b64encode(b"just a string").decode(),
            base64.b64encode(b"apiVersion: v1\nclusters: []\n").decode(),
        ],
    )
    def test_malformed_payload_raises(self, payload: str | None) -> None:
        with pytest.raises(CredentialDecodeError):
            decode_kubeconfig(payload)


# ---------------------------------------------------------------------------
# CredentialResolver
# ---------------------------------------------------------------------------


class TestCredentialResolver:
    async def test_cluster_settlement_resolves_bundle(self, fake_azure: FakeAzure) -> None:
        bus = EventBus()
        resolver = CredentialResolver(fake_azure, CredentialScope.ADMIN)
        resolver.attach(bus)
        descriptor_ref = resolver.kubeconfig("aks")
        assert descriptor_ref.dependencies == frozenset({"aks"})

        bus.emit(_settled("aks", CLUSTER))
        bundle = await asyncio.wait_for(resolver.bundle("aks"), timeout=1)

        assert bundle.kind == CredentialKind.CLUSTER
        assert bundle.scope == "admin"
        assert fake_azure.credential_calls == [("cluster", "admin")]
        assert (await descriptor_ref.resolve())["context"] == "microservices-aks"
        assert "apiVersion" in await resolver.raw_kubeconfig("aks").resolve()
        assert resolver.cached("aks") is bundle
        await resolver.close()

    async def test_bundle_repr_hides_secrets(self, fake_azure: FakeAzure) -> None:
        bus = EventBus()
        resolver = CredentialResolver(fake_azure)
        resolver.attach(bus)
        bus.emit(_settled("acr", REGISTRY, properties={"adminUserEnabled": True}))
        bundle = await asyncio.wait_for(resolver.bundle("acr"), timeout=1)
        assert "pw-1" not in repr(bundle)
        assert await resolver.registry_login("acr").resolve() == {"username": "microservicesacr", "password": "pw-1"}

    async def test_zero_kubeconfig_entries_fails_the_cell(self, fake_azure: FakeAzure) -> None:
        fake_azure.kubeconfigs = []
        bus = EventBus()
        resolver = CredentialResolver(fake_azure)
        resolver.attach(bus)
        bus.emit(_settled("aks", CLUSTER))
        with pytest.raises(NoCredentialsReturned):
            await asyncio.wait_for(resolver.bundle("aks"), timeout=1)
        assert resolver.cached("aks") is None

    async def test_failed_cluster_propagates_upstream_failure(self, fake_azure: FakeAzure) -> None:
        bus = EventBus()
        resolver = CredentialResolver(fake_azure)
        resolver.attach(bus)
        bus.emit(
            ResourceEvent(
                resource_id="aks",
                type=CLUSTER,
                state=ResourceState.FAILED,
                error=RuntimeError("quota exceeded"),
            )
        )
        with pytest.raises(UpstreamFailed, match="quota exceeded"):
            await asyncio.wait_for(resolver.kubeconfig("aks").resolve(), timeout=1)
        assert fake_azure.credential_calls == []

    async def test_registry_without_admin_user_fails(self, fake_azure: FakeAzure) -> None:
        bus = EventBus()
        resolver = CredentialResolver(fake_azure)
        resolver.attach(bus)
        bus.emit(_settled("acr", REGISTRY, properties={"adminUserEnabled": False}))
        with pytest.raises(CredentialError, match="admin user"):
            await asyncio.wait_for(resolver.bundle("acr"), timeout=1)

    async def test_registry_without_username_is_a_decode_error(self, fake_azure: FakeAzure) -> None:
        fake_azure.registry_credentials = RegistryCredentials("", ["pw"])
        bus = EventBus()
        resolver = CredentialResolver(fake_azure)
        resolver.attach(bus)
        bus.emit(_settled("acr", REGISTRY, properties={"adminUserEnabled": True}))
        with pytest.raises(CredentialDecodeError):
            await asyncio.wait_for(resolver.bundle("acr"), timeout=1)

    async def test_noop_settlement_reuses_cache(self, fake_azure: FakeAzure) -> None:
        bus = EventBus()
        resolver = CredentialResolver(fake_azure)
        resolver.attach(bus)
        bus.emit(_settled("aks", CLUSTER))
        first = await asyncio.wait_for(resolver.bundle("aks"), timeout=1)
        bus.emit(_settled("aks", CLUSTER, operation=Operation.NOOP))
        assert await resolver.bundle("aks") is first
        assert len(fake_azure.credential_calls) == 1

    async def test_recreation_invalidates_and_refetches(self, fake_azure: FakeAzure) -> None:
        bus = EventBus()
        resolver = CredentialResolver(fake_azure)
        resolver.attach(bus)
        bus.emit(_settled("aks", CLUSTER))
        first = await asyncio.wait_for(resolver.bundle("aks"), timeout=1)

        fake_azure.kubeconfigs = [encode_kubeconfig({**KUBECONFIG, "current-context": "rotated"})]
        bus.emit(_settled("aks", CLUSTER, operation=Operation.CREATE))
        second = await asyncio.wait_for(resolver.bundle("aks"), timeout=1)

        assert second is not first
        assert second.descriptor["context"] == "rotated"
        assert len(fake_azure.credential_calls) == 2

    async def test_unrelated_types_are_ignored(self, fake_azure: FakeAzure) -> None:
        bus = EventBus()
        resolver = CredentialResolver(fake_azure)
        resolver.attach(bus)
        bus.emit(_settled("rg", "azure:resources/ResourceGroup"))
        await asyncio.sleep(0)
        assert fake_azure.credential_calls == []
        assert resolver.cached("rg") is None
