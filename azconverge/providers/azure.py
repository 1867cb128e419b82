"""Azure Resource Manager provider over the ARM REST API.

Resources are addressed from their resolved properties:

    name               -- resource name (all types)
    resourceGroupName  -- owning resource group (all types but ResourceGroup)
    scope              -- ARM scope id (RoleAssignment only)

Everything else in ``properties`` is the ARM request body.  PUT on ARM is
create-or-update, so ``create`` is idempotent.  Long-running operations are
awaited by polling ``properties.provisioningState``; the overall deadline is
the engine's per-resource timeout, not this module's.

Authentication uses a bearer token from config, falling back to the Azure
CLI (``az account get-access-token``) when none is configured.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from azconverge.errors import ProviderFatalError, ProviderTransientError
from azconverge.models.config import AzureConfig
from azconverge.providers.base import CredentialSource, RegistryCredentials, ResourceProvider

_log = structlog.get_logger(component="providers.azure")

_ADDRESS_KEYS = frozenset({"name", "resourceGroupName", "scope"})
_TERMINAL_OK = frozenset({"Succeeded"})
_TERMINAL_BAD = frozenset({"Failed", "Canceled"})
_TRANSIENT_STATUS = frozenset({408, 409, 429})

ACR_PULL_ROLE_ID = "7f951dda-4ed3-4680-a7ca-43fe172d538d"


@dataclass(frozen=True)
class _ArmType:
    provider_path: str  # "" for resource groups
    api_version: str
    long_running: bool = True


ARM_TYPES: dict[str, _ArmType] = {
    "azure:resources/ResourceGroup": _ArmType("", "2022-09-01", long_running=False),
    "azure:containerregistry/Registry": _ArmType("Microsoft.ContainerRegistry/registries", "2023-07-01"),
    "azure:containerservice/ManagedCluster": _ArmType("Microsoft.ContainerService/managedClusters", "2024-02-01"),
    "azure:authorization/RoleAssignment": _ArmType(
        "Microsoft.Authorization/roleAssignments", "2022-04-01", long_running=False
    ),
    "azure:web/AppServicePlan": _ArmType("Microsoft.Web/serverfarms", "2023-12-01"),
    "azure:web/WebApp": _ArmType("Microsoft.Web/sites", "2023-12-01"),
}

# Fields ARM accepts on PUT but never echoes back on GET.  Comparing them
# would report drift on every run.
_WRITE_ONLY_PATHS: dict[str, tuple[tuple[str, ...], ...]] = {
    "azure:web/WebApp": (("properties", "siteConfig", "appSettings"),),
}


class ArmProvider(ResourceProvider, CredentialSource):
    """ResourceProvider + CredentialSource backed by the ARM REST API."""

    name = "azure"

    def __init__(
        self,
        config: AzureConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.arm_endpoint.rstrip("/"),
            timeout=config.request_timeout,
            transport=transport,
        )
        self._token = config.arm_token
        self._token_expires_at = float("inf") if config.arm_token else 0.0
        self._subscription_id = config.subscription_id
        self._auth_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def subscription_id(self) -> str:
        """The subscription all resources are created in."""
        if not self._subscription_id:
            account = await _az_json(["account", "show"])
            self._subscription_id = str(account["id"])
        return self._subscription_id

    async def _bearer(self) -> str:
        async with self._auth_lock:
            if self._token and time.time() < self._token_expires_at - 60:
                return self._token
            resource = self._config.arm_endpoint.rstrip("/") + "/"
            data = await _az_json(["account", "get-access-token", "--resource", resource])
            self._token = str(data["accessToken"])
            self._token_expires_at = float(data.get("expires_on") or time.time() + 3000)
            _log.info("arm_token_refreshed")
            return self._token

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    async def resource_path(self, resource_type: str, properties: dict[str, Any]) -> str:
        arm_type = _arm_type(resource_type)
        name = properties.get("name")
        if not name:
            raise ProviderFatalError(f"{resource_type} declaration is missing 'name'")
        if resource_type == "azure:authorization/RoleAssignment":
            scope = properties.get("scope")
            if not scope:
                raise ProviderFatalError("RoleAssignment declaration is missing 'scope'")
            return f"{str(scope).rstrip('/')}/providers/{arm_type.provider_path}/{name}"
        subscription = await self.subscription_id()
        if resource_type == "azure:resources/ResourceGroup":
            return f"/subscriptions/{subscription}/resourcegroups/{name}"
        group = properties.get("resourceGroupName")
        if not group:
            raise ProviderFatalError(f"{resource_type} declaration is missing 'resourceGroupName'")
        return f"/subscriptions/{subscription}/resourceGroups/{group}/providers/{arm_type.provider_path}/{name}"

    @staticmethod
    def request_body(properties: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in properties.items() if k not in _ADDRESS_KEYS}

    def desired_state(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any]:
        body = self.request_body(properties)
        for path in _WRITE_ONLY_PATHS.get(resource_type, ()):
            body = _without(body, path)
        return body

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def read(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any] | None:
        path = await self.resource_path(resource_type, properties)
        response = await self._request("GET", path, _arm_type(resource_type).api_version, allow_404=True)
        if response is None:
            return None
        return _json(response)

    async def create(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any]:
        return await self._put(resource_type, properties)

    async def update(
        self,
        resource_type: str,
        properties: dict[str, Any],
        current: dict[str, Any],
    ) -> dict[str, Any]:
        return await self._put(resource_type, properties)

    async def delete(self, resource_type: str, properties: dict[str, Any]) -> None:
        arm_type = _arm_type(resource_type)
        path = await self.resource_path(resource_type, properties)
        response = await self._request("DELETE", path, arm_type.api_version, allow_404=True)
        if response is None or response.status_code == 204:
            return
        if response.status_code == 200 and not arm_type.long_running:
            return
        while True:
            remaining = await self._request("GET", path, arm_type.api_version, allow_404=True)
            if remaining is None:
                _log.info("arm_resource_deleted", path=path)
                return
            await asyncio.sleep(self._config.poll_interval)

    async def _put(self, resource_type: str, properties: dict[str, Any]) -> dict[str, Any]:
        arm_type = _arm_type(resource_type)
        path = await self.resource_path(resource_type, properties)
        response = await self._request("PUT", path, arm_type.api_version, body=self.request_body(properties))
        assert response is not None
        state = _json(response)
        if not arm_type.long_running:
            return state
        return await self._await_provisioning(path, arm_type.api_version, state)

    async def _await_provisioning(self, path: str, api_version: str, state: dict[str, Any]) -> dict[str, Any]:
        while True:
            provisioning = (state.get("properties") or {}).get("provisioningState")
            if provisioning is None or provisioning in _TERMINAL_OK:
                return state
            if provisioning in _TERMINAL_BAD:
                raise ProviderFatalError(f"ARM provisioning of {path} ended in state {provisioning}")
            _log.debug("arm_provisioning_wait", path=path, state=provisioning)
            await asyncio.sleep(self._config.poll_interval)
            response = await self._request("GET", path, api_version)
            assert response is not None
            state = _json(response)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def list_cluster_credentials(self, properties: dict[str, Any], scope: str) -> list[str]:
        resource_type = "azure:containerservice/ManagedCluster"
        path = await self.resource_path(resource_type, properties)
        action = "listClusterAdminCredential" if scope == "admin" else "listClusterUserCredential"
        response = await self._request("POST", f"{path}/{action}", _arm_type(resource_type).api_version)
        assert response is not None
        payload = _json(response)
        return [str(entry.get("value") or "") for entry in payload.get("kubeconfigs") or []]

    async def list_registry_credentials(self, properties: dict[str, Any]) -> RegistryCredentials:
        resource_type = "azure:containerregistry/Registry"
        path = await self.resource_path(resource_type, properties)
        response = await self._request("POST", f"{path}/listCredentials", _arm_type(resource_type).api_version)
        assert response is not None
        payload = _json(response)
        return RegistryCredentials(
            username=str(payload.get("username") or ""),
            passwords=[str(p.get("value") or "") for p in payload.get("passwords") or [] if p.get("value")],
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        api_version: str,
        body: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> httpx.Response | None:
        headers = {"Authorization": f"Bearer {await self._bearer()}"}
        try:
            response = await self._client.request(
                method,
                path,
                params={"api-version": api_version},
                json=body,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTransientError(f"ARM {method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"ARM {method} {path} transport error: {exc}") from exc

        if response.status_code == 404 and allow_404:
            return None
        if response.is_success:
            return response
        raise _classify(method, path, response)

    async def close(self) -> None:
        await self._client.aclose()


def _arm_type(resource_type: str) -> _ArmType:
    try:
        return ARM_TYPES[resource_type]
    except KeyError:
        raise ProviderFatalError(f"Unsupported ARM resource type '{resource_type}'") from None


def _classify(method: str, path: str, response: httpx.Response) -> ProviderTransientError | ProviderFatalError:
    """Map a non-2xx ARM response onto the provider error taxonomy."""
    status = response.status_code
    detail = _error_detail(response)
    message = f"ARM {method} {path} failed with {status}: {detail}"
    if status in _TRANSIENT_STATUS or status >= 500:
        return ProviderTransientError(message, status_code=status, retry_after=_retry_after(response))
    return ProviderFatalError(message, status_code=status)


def _error_detail(response: httpx.Response) -> str:
    try:
        error = response.json().get("error") or {}
    except (json.JSONDecodeError, AttributeError):
        return response.text[:200]
    code = error.get("code", "")
    message = error.get("message", "")
    return f"{code}: {message}" if code else message or response.text[:200]


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _json(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except json.JSONDecodeError as exc:
        raise ProviderFatalError(f"ARM returned a non-JSON body: {response.text[:200]}") from exc
    return data if isinstance(data, dict) else {}


def _without(body: dict[str, Any], path: tuple[str, ...]) -> dict[str, Any]:
    head, *rest = path
    if head not in body:
        return body
    copy = dict(body)
    if not rest:
        del copy[head]
    elif isinstance(copy[head], dict):
        copy[head] = _without(copy[head], tuple(rest))
    return copy


async def _az_json(args: list[str]) -> dict[str, Any]:
    """Run an ``az`` CLI command and return its parsed JSON output."""
    cmd = ["az", *args, "-o", "json"]
    _log.info("az_cli", command=" ".join(args[:3]))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=120)
    except FileNotFoundError as exc:
        raise ProviderFatalError("Azure CLI not found; set AZCONVERGE_ARM_TOKEN and AZCONVERGE_SUBSCRIPTION_ID") from exc
    except TimeoutError as exc:
        raise ProviderTransientError("az CLI timed out") from exc
    if proc.returncode != 0:
        raise ProviderFatalError(f"az {' '.join(args[:2])} failed: {stderr.decode(errors='replace')[:200]}")
    try:
        return json.loads(stdout)  # type: ignore[no-any-return]
    except json.JSONDecodeError as exc:
        raise ProviderFatalError("az CLI returned invalid JSON") from exc
