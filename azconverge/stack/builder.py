"""Stack builder: StackConfig -> declared resource graph + outputs.

One parameterized builder covers both hosting platforms:

cluster
    ResourceGroup -> Registry, ManagedCluster -> AcrPull role grant
    -> WorkloadSet (optional)

app-service
    ResourceGroup -> Registry, AppServicePlan -> backend WebApp
    -> frontend WebApp

Cross-resource values (resource group name, registry login server, kubelet
identity, credentials) are DeferredValues, so the ordering between resources
comes from the references themselves plus a few explicit ``depends_on``
gates.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from azconverge.credentials.resolver import CredentialResolver
from azconverge.deferred import DeferredValue, interpolate
from azconverge.graph.store import ResourceStore
from azconverge.models.config import StackConfig, TargetPlatform
from azconverge.providers.azure import ACR_PULL_ROLE_ID
from azconverge.stack.manifests import builtin_workloads, frontend_address, load_workloads
from azconverge.stack.outputs import StackOutputs
from azconverge.workloads.binding import WORKLOAD_SET_TYPE, validate_workloads

RESOURCE_GROUP_ID = "resource-group"
REGISTRY_ID = "container-registry"
CLUSTER_ID = "aks-cluster"
ROLE_GRANT_ID = "aks-acr-pull"
WORKLOADS_ID = "workloads"
APP_SERVICE_PLAN_ID = "app-service-plan"
BACKEND_APP_ID = "backend-webapp"
FRONTEND_APP_ID = "frontend-webapp"

RESOURCE_GROUP_TYPE = "azure:resources/ResourceGroup"
REGISTRY_TYPE = "azure:containerregistry/Registry"
CLUSTER_TYPE = "azure:containerservice/ManagedCluster"
ROLE_ASSIGNMENT_TYPE = "azure:authorization/RoleAssignment"
APP_SERVICE_PLAN_TYPE = "azure:web/AppServicePlan"
WEB_APP_TYPE = "azure:web/WebApp"

SubscriptionLookup = Callable[[], Awaitable[str]]


@dataclass
class Stack:
    """A built, sealed stack ready to be planned."""

    config: StackConfig
    store: ResourceStore
    outputs: StackOutputs


def build_stack(
    config: StackConfig,
    credentials: CredentialResolver,
    subscription_id: SubscriptionLookup | None = None,
) -> Stack:
    """Declare every resource for ``config.platform`` into a fresh store."""
    store = ResourceStore()
    outputs = StackOutputs()
    tags = {"environment": config.stack, "project": config.project}

    store.declare(
        RESOURCE_GROUP_ID,
        RESOURCE_GROUP_TYPE,
        {"name": config.resource_group, "location": config.location, "tags": tags},
    )
    group_name = store.output(RESOURCE_GROUP_ID, "name")
    location = store.output(RESOURCE_GROUP_ID, "location")

    store.declare(
        REGISTRY_ID,
        REGISTRY_TYPE,
        {
            "name": config.registry.name,
            "resourceGroupName": group_name,
            "location": location,
            "sku": {"name": config.registry.sku},
            "properties": {"adminUserEnabled": config.registry.admin_enabled},
            "tags": tags,
        },
    )
    login_server = store.output(REGISTRY_ID, "properties.loginServer")

    outputs.declare("resourceGroupName", group_name)
    if config.platform == TargetPlatform.APP_SERVICE:
        _declare_app_service(store, outputs, config, credentials, group_name, location, login_server, tags)
    else:
        _declare_cluster(store, outputs, config, credentials, subscription_id, group_name, location, login_server, tags)
    outputs.declare("acrLoginServer", login_server)
    outputs.declare("acrName", store.output(REGISTRY_ID, "name"))

    store.seal()
    return Stack(config=config, store=store, outputs=outputs)


def _declare_cluster(
    store: ResourceStore,
    outputs: StackOutputs,
    config: StackConfig,
    credentials: CredentialResolver,
    subscription_id: SubscriptionLookup | None,
    group_name: DeferredValue[Any],
    location: DeferredValue[Any],
    login_server: DeferredValue[Any],
    tags: dict[str, str],
) -> None:
    cluster = config.cluster
    store.declare(
        CLUSTER_ID,
        CLUSTER_TYPE,
        {
            "name": cluster.name,
            "resourceGroupName": group_name,
            "location": location,
            "identity": {"type": "SystemAssigned"},
            "properties": {
                "dnsPrefix": cluster.dns_prefix,
                "agentPoolProfiles": [
                    {
                        "name": "agentpool",
                        "count": cluster.node_count,
                        "vmSize": cluster.node_size,
                        "mode": "System",
                        "osType": "Linux",
                        "osDiskSizeGB": 30,
                        "type": "VirtualMachineScaleSets",
                        "enableAutoScaling": False,
                    }
                ],
                "networkProfile": {
                    "networkPlugin": "azure",
                    "networkPolicy": "azure",
                    "loadBalancerSku": "standard",
                    "serviceCidr": "10.0.0.0/16",
                    "dnsServiceIP": "10.0.0.10",
                },
                "enableRBAC": True,
            },
            "tags": tags,
        },
    )

    if subscription_id is not None:
        subscription: DeferredValue[str] = DeferredValue((), subscription_id, "subscription")
    else:
        subscription = DeferredValue.constant(config.azure.subscription_id)
    store.declare(
        ROLE_GRANT_ID,
        ROLE_ASSIGNMENT_TYPE,
        {
            "name": role_assignment_name(config),
            "scope": store.output(REGISTRY_ID, "id"),
            "properties": {
                "principalId": store.output(CLUSTER_ID, "properties.identityProfile.kubeletidentity.objectId"),
                "principalType": "ServicePrincipal",
                "roleDefinitionId": interpolate(
                    "/subscriptions/{}/providers/Microsoft.Authorization/roleDefinitions/" + ACR_PULL_ROLE_ID,
                    subscription,
                ),
            },
        },
    )

    outputs.declare("clusterName", store.output(CLUSTER_ID, "name"))
    if config.workloads.enabled:
        workloads = config.workloads
        if workloads.manifest_files:
            entries = load_workloads(workloads.manifest_files, login_server, workloads.image_tag)
        else:
            entries = builtin_workloads(workloads, login_server, config.stack)
        validate_workloads(entries)
        store.declare(
            WORKLOADS_ID,
            WORKLOAD_SET_TYPE,
            {
                "kubeconfig": credentials.kubeconfig(CLUSTER_ID),
                "namespace": workloads.namespace,
                "workloads": entries,
            },
            depends_on=[ROLE_GRANT_ID],
        )
        outputs.declare("frontendUrl", store.output(WORKLOADS_ID).apply(frontend_address, "frontendUrl"))
    outputs.declare("kubeconfig", credentials.raw_kubeconfig(CLUSTER_ID), secret=True)


def _declare_app_service(
    store: ResourceStore,
    outputs: StackOutputs,
    config: StackConfig,
    credentials: CredentialResolver,
    group_name: DeferredValue[Any],
    location: DeferredValue[Any],
    login_server: DeferredValue[Any],
    tags: dict[str, str],
) -> None:
    app_service = config.app_service
    sku = app_service.sku
    store.declare(
        APP_SERVICE_PLAN_ID,
        APP_SERVICE_PLAN_TYPE,
        {
            "name": app_service.plan_name,
            "resourceGroupName": group_name,
            "location": location,
            "kind": "linux",
            "sku": {"name": sku, "tier": _sku_tier(sku), "size": sku, "family": sku[:1], "capacity": 1},
            "properties": {"reserved": True},
            "tags": tags,
        },
    )
    plan_id = store.output(APP_SERVICE_PLAN_ID, "id")
    registry_login = credentials.registry_login(REGISTRY_ID)
    image_tag = config.workloads.image_tag

    backend_host = store.output(BACKEND_APP_ID, "properties.defaultHostName")
    apps = (
        (BACKEND_APP_ID, app_service.backend_app_name, "backend", 3001, []),
        (
            FRONTEND_APP_ID,
            app_service.frontend_app_name,
            "frontend",
            3000,
            [{"name": "BACKEND_URL", "value": interpolate("https://{}", backend_host)}],
        ),
    )
    for resource_id, name, service, port, extra_settings in apps:
        store.declare(
            resource_id,
            WEB_APP_TYPE,
            {
                "name": name,
                "resourceGroupName": group_name,
                "location": location,
                "kind": "app,linux,container",
                "properties": {
                    "serverFarmId": plan_id,
                    "httpsOnly": True,
                    "siteConfig": {
                        "linuxFxVersion": interpolate("DOCKER|{}/{}-service:{}", login_server, service, image_tag),
                        "alwaysOn": False,
                        "appSettings": [
                            {"name": "WEBSITES_ENABLE_APP_SERVICE_STORAGE", "value": "false"},
                            {"name": "DOCKER_REGISTRY_SERVER_URL", "value": interpolate("https://{}", login_server)},
                            {
                                "name": "DOCKER_REGISTRY_SERVER_USERNAME",
                                "value": registry_login.apply(lambda c: c["username"]),
                            },
                            {
                                "name": "DOCKER_REGISTRY_SERVER_PASSWORD",
                                "value": registry_login.apply(lambda c: c["password"]),
                            },
                            {"name": "PORT", "value": str(port)},
                            *extra_settings,
                            {"name": "NODE_ENV", "value": "production"},
                            {"name": "DD_SERVICE", "value": f"{service}-service"},
                            {"name": "DD_ENV", "value": config.stack},
                        ],
                    },
                },
                "tags": {**tags, "service": service},
            },
        )

    outputs.declare("backendUrl", interpolate("https://{}", backend_host))
    outputs.declare(
        "frontendUrl", interpolate("https://{}", store.output(FRONTEND_APP_ID, "properties.defaultHostName"))
    )
    outputs.declare("appServicePlanName", store.output(APP_SERVICE_PLAN_ID, "name"))


def role_assignment_name(config: StackConfig) -> str:
    """Role assignment names must be GUIDs; derive a stable one per stack."""
    seed = f"{config.resource_group}/{config.cluster.name}/{config.registry.name}/acrpull"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, seed))


def _sku_tier(sku: str) -> str:
    tiers = {"F": "Free", "D": "Shared", "B": "Basic", "S": "Standard", "P": "PremiumV2"}
    if sku.upper().startswith("P") and sku.upper().endswith("V3"):
        return "PremiumV3"
    return tiers.get(sku[:1].upper(), "Basic")
