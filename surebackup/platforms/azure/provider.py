"""Azure Resource Manager platform implementation."""

import asyncio
import logging
import secrets
from collections.abc import AsyncGenerator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from ipaddress import IPv4Network
from typing import Any

import aiohttp
from yarl import URL

from surebackup.models.restore import (
    ANY_ADDRESS,
    MANAGEMENT_PLANE,
    SecurityRule,
    TestEnvironment,
)
from surebackup.platforms.azure.config import AzureConfig
from surebackup.platforms.azure.models import (
    InstanceView,
    Resource,
    RunCommandOutput,
    TokenResponse,
    VirtualNetwork,
)
from surebackup.platforms.base import (
    CloudPlatform,
    CommandResult,
    GuestOs,
    NetworkHandle,
    PlatformError,
    VmStatus,
)
from surebackup.polling import Deadline, wait

log = logging.getLogger(__name__)

RESOURCES_API_VERSION = "2021-04-01"
NETWORK_API_VERSION = "2023-09-01"
COMPUTE_API_VERSION = "2024-03-01"

MANAGEMENT_SERVICE_TAG = "AzureCloud"
SUBNET_NAME = "surebackup-test"

RUN_COMMAND_IDS: Mapping[GuestOs, str] = {
    "linux": "RunShellScript",
    "windows": "RunPowerShellScript",
}

PROTOCOLS: Mapping[str, str] = {"*": "*", "tcp": "Tcp", "udp": "Udp"}

TERMINAL_PROVISIONING_STATES: frozenset[str] = frozenset(
    ["Succeeded", "Failed", "Canceled"]
)


def address_prefix(address: str) -> str:
    """Translate a platform-neutral address into an NSG address prefix."""
    if address == MANAGEMENT_PLANE:
        return MANAGEMENT_SERVICE_TAG
    if address == ANY_ADDRESS:
        return "*"
    return address


def security_rule_payload(rule: SecurityRule) -> dict[str, Any]:
    """Build the NSG representation of a security rule."""
    return {
        "name": rule.name,
        "properties": {
            "priority": rule.priority,
            "direction": rule.direction.capitalize(),
            "access": rule.access.capitalize(),
            "protocol": PROTOCOLS[rule.protocol],
            "sourceAddressPrefix": address_prefix(rule.source),
            "sourcePortRange": "*",
            "destinationAddressPrefix": address_prefix(rule.destination),
            "destinationPortRange": rule.destination_ports,
        },
    }


def parse_run_command_output(output: RunCommandOutput) -> CommandResult:
    """Split run command output into stdout and stderr.

    Windows agents report separate StdOut/StdErr entries, Linux agents a
    single message with ``[stdout]`` and ``[stderr]`` sections.
    """
    stdout: list[str] = []
    stderr: list[str] = []

    for status in output.value:
        message = status.message or ""
        if "/StdOut/" in status.code:
            stdout.append(message)
        elif "/StdErr/" in status.code:
            stderr.append(message)
        elif "[stdout]" in message or "[stderr]" in message:
            _, _, rest = message.partition("[stdout]")
            out, _, err = rest.partition("[stderr]")
            stdout.append(out)
            stderr.append(err)
        else:
            stdout.append(message)

    return CommandResult(
        stdout="\n".join(part.strip() for part in stdout if part.strip()),
        stderr="\n".join(part.strip() for part in stderr if part.strip()),
    )


@dataclass(kw_only=True)
class ClientCredentials:
    """Service principal credentials with a cached management token."""

    config: AzureConfig
    session: aiohttp.ClientSession = field(repr=False)
    _token: str | None = field(default=None, init=False, repr=False)
    _expires_at: float = field(default=0.0, init=False, repr=False)

    async def token(self) -> str:
        """Return a valid bearer token, requesting a new one when stale."""
        now = asyncio.get_running_loop().time()
        if self._token is not None and now < self._expires_at:
            return self._token

        url = (
            URL(self.config.login_base_url)
            / self.config.tenant_id
            / "oauth2/v2.0/token"
        )
        form = {
            "grant_type": "client_credentials",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret.get_secret_value(),
            "scope": f"{self.config.api_base_url.rstrip('/')}/.default",
        }
        async with self.session.post(url, data=form) as response:
            if response.status != 200:
                text = await response.text()
                raise PlatformError(
                    f"Failed to obtain management token: {response.status} {text}"
                )
            data = await response.json(content_type=None)

        token = TokenResponse.model_validate(data)
        self._token = token.access_token
        self._expires_at = now + max(token.expires_in - 60, 0)
        return self._token


@dataclass(frozen=True, kw_only=True)
class AzurePlatform(CloudPlatform):
    """Azure platform driving the Resource Manager REST API."""

    config: AzureConfig
    session: aiohttp.ClientSession = field(repr=False)
    credentials: ClientCredentials = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: AzureConfig
    ) -> AsyncGenerator["AzurePlatform", None]:
        """Create platform with managed session lifecycle."""
        async with aiohttp.ClientSession(
            headers={"Accept": "application/json"},
        ) as session:
            yield cls(
                config=config,
                session=session,
                credentials=ClientCredentials(config=config, session=session),
            )

    async def create_resource_group(
        self, name: str, region: str, tags: Mapping[str, str]
    ) -> str:
        """Create a resource group and return its ID."""
        url = self._resource_group_url(name).with_query(
            {"api-version": RESOURCES_API_VERSION}
        )
        data = await self._request(
            "PUT", url, json={"location": region, "tags": dict(tags)}
        )
        resource = Resource.model_validate(data)
        log.info("Created resource group %s in %s", name, region)
        return resource.id

    async def create_security_ruleset(
        self,
        resource_group: str,
        name: str,
        region: str,
        rules: Sequence[SecurityRule],
    ) -> str:
        """Create a network security group holding the rules."""
        url = self._network_url(
            resource_group, "networkSecurityGroups", name
        ).with_query({"api-version": NETWORK_API_VERSION})
        payload = {
            "location": region,
            "properties": {
                "securityRules": [security_rule_payload(rule) for rule in rules],
            },
        }
        await self._request("PUT", url, json=payload)
        data = await self._wait_for_provisioning(url)
        resource = Resource.model_validate(data)
        log.info("Created network security group %s (%d rules)", name, len(rules))
        return resource.id

    async def create_network(
        self,
        resource_group: str,
        name: str,
        region: str,
        cidr: IPv4Network,
        ruleset_id: str,
    ) -> NetworkHandle:
        """Create a virtual network with a single NSG-guarded subnet."""
        url = self._network_url(resource_group, "virtualNetworks", name).with_query(
            {"api-version": NETWORK_API_VERSION}
        )
        payload = {
            "location": region,
            "properties": {
                "addressSpace": {"addressPrefixes": [str(cidr)]},
                "subnets": [
                    {
                        "name": SUBNET_NAME,
                        "properties": {
                            "addressPrefix": str(cidr),
                            "networkSecurityGroup": {"id": ruleset_id},
                        },
                    }
                ],
            },
        }
        await self._request("PUT", url, json=payload)
        network = VirtualNetwork.model_validate(await self._wait_for_provisioning(url))

        subnet_id = next(
            (subnet.id for subnet in network.properties.subnets),
            f"{network.id}/subnets/{SUBNET_NAME}",
        )
        log.info("Created virtual network %s (%s)", name, cidr)
        return NetworkHandle(network_id=network.id, subnet_id=subnet_id)

    async def get_vm_status(self, resource_group: str, vm_name: str) -> VmStatus | None:
        """Return power, provisioning and agent state from the instance view."""
        url = (self._vm_url(resource_group, vm_name) / "instanceView").with_query(
            {"api-version": COMPUTE_API_VERSION}
        )
        data = await self._request("GET", url, allow_not_found=True)
        if data is None:
            return None

        view = InstanceView.model_validate(data)
        return VmStatus(
            power_state=view.status_value("PowerState"),
            provisioning_state=view.status_value("ProvisioningState"),
            agent_ready=view.agent_ready,
        )

    async def run_command(
        self,
        resource_group: str,
        vm_name: str,
        script: Sequence[str],
        guest_os: GuestOs,
    ) -> CommandResult:
        """Invoke a run command and wait for its output."""
        url = (self._vm_url(resource_group, vm_name) / "runCommand").with_query(
            {"api-version": COMPUTE_API_VERSION}
        )
        payload = {"commandId": RUN_COMMAND_IDS[guest_os], "script": list(script)}

        status, data, headers = await self._send("POST", url, json=payload)
        if status == 202:
            operation_url = headers.get("Azure-AsyncOperation") or headers.get(
                "Location"
            )
            if not operation_url:
                raise PlatformError("Run command accepted without an operation URL")
            data = await self._wait_for_operation(URL(operation_url))

        if isinstance(data, Mapping) and "properties" in data:
            data = data["properties"].get("output", data)
        return parse_run_command_output(RunCommandOutput.model_validate(data or {}))

    async def deploy_standin_vm(
        self, environment: TestEnvironment, vm_name: str, vm_size: str
    ) -> None:
        """Deploy a stock-image VM without public IP into the test subnet."""
        rg = environment.resource_group_name
        nic_url = self._network_url(
            rg, "networkInterfaces", f"{vm_name}-nic"
        ).with_query({"api-version": NETWORK_API_VERSION})
        nic_payload = {
            "location": environment.region,
            "properties": {
                "ipConfigurations": [
                    {
                        "name": "ipconfig1",
                        "properties": {
                            "subnet": {"id": environment.subnet_id},
                            "privateIPAllocationMethod": "Dynamic",
                        },
                    }
                ]
            },
        }
        await self._request("PUT", nic_url, json=nic_payload)
        nic = Resource.model_validate(await self._wait_for_provisioning(nic_url))

        image = self.config.standin_image
        vm_payload = {
            "location": environment.region,
            "tags": {"purpose": "surebackup-standin"},
            "properties": {
                "hardwareProfile": {"vmSize": vm_size},
                "storageProfile": {
                    "imageReference": image.model_dump(),
                    "osDisk": {
                        "createOption": "FromImage",
                        "deleteOption": "Delete",
                        "managedDisk": {"storageAccountType": "Standard_LRS"},
                    },
                },
                "osProfile": {
                    "computerName": vm_name,
                    "adminUsername": self.config.standin_admin_username,
                    "adminPassword": f"{secrets.token_urlsafe(24)}aA1!",
                },
                "networkProfile": {"networkInterfaces": [{"id": nic.id}]},
            },
        }
        vm_url = self._vm_url(rg, vm_name).with_query(
            {"api-version": COMPUTE_API_VERSION}
        )
        await self._request("PUT", vm_url, json=vm_payload)
        log.info("Submitted stand-in VM %s (%s) in %s", vm_name, vm_size, rg)

    async def delete_resource_group(self, name: str) -> None:
        """Start asynchronous deletion of the resource group."""
        url = self._resource_group_url(name).with_query(
            {"api-version": RESOURCES_API_VERSION}
        )
        await self._request("DELETE", url, allow_not_found=True)
        log.info("Deletion of resource group %s accepted", name)

    def manual_cleanup_command(self, resource_group: str) -> str:
        """Azure CLI command removing a leftover resource group."""
        return f"az group delete --name {resource_group} --yes --no-wait"

    async def _request(
        self,
        method: str,
        url: URL,
        *,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        status, data, _ = await self._send(
            method, url, json=json, allow_not_found=allow_not_found
        )
        if status == 404:
            return None
        return data

    async def _send(
        self,
        method: str,
        url: URL,
        *,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> tuple[int, Any, Mapping[str, str]]:
        try:
            headers = {"Authorization": f"Bearer {await self.credentials.token()}"}
            async with self.session.request(
                method, url, json=json, headers=headers
            ) as response:
                if response.status == 404 and allow_not_found:
                    return 404, None, response.headers
                if response.status >= 400:
                    text = await response.text()
                    raise PlatformError(
                        f"{method} {url.path} failed: {response.status} {text}"
                    )
                text = await response.text()
                data = await response.json(content_type=None) if text else None
                return response.status, data, response.headers
        except (aiohttp.ClientError, TimeoutError) as e:
            raise PlatformError(f"{method} {url.path} failed: {e}") from e

    async def _wait_for_provisioning(self, url: URL) -> Any:
        """Poll a resource until its provisioning state is terminal."""
        deadline = Deadline.after(self.config.operation_timeout)
        while True:
            data = await self._request("GET", url)
            state = Resource.model_validate(data).properties.provisioning_state
            if state in TERMINAL_PROVISIONING_STATES:
                if state != "Succeeded":
                    raise PlatformError(f"Provisioning of {url.path} ended in {state}")
                return data

            if deadline.expired:
                raise PlatformError(
                    f"Provisioning of {url.path} did not complete within "
                    f"{self.config.operation_timeout} seconds"
                )
            await wait(
                self.config.operation_poll_interval, self.cancel_event, deadline
            )

    async def _wait_for_operation(self, url: URL) -> Any:
        """Poll an asynchronous operation URL until it completes."""
        deadline = Deadline.after(self.config.operation_timeout)
        while True:
            status, data, _ = await self._send("GET", url)
            if status != 202:
                state = data.get("status") if isinstance(data, Mapping) else None
                if state in ("Failed", "Canceled"):
                    error = data.get("error", {}) if isinstance(data, Mapping) else {}
                    raise PlatformError(
                        f"Operation {url.path} ended in {state}: "
                        f"{error.get('message', 'no details')}"
                    )
                if state not in ("InProgress", "Accepted"):
                    return data

            if deadline.expired:
                raise PlatformError(
                    f"Operation {url.path} did not complete within "
                    f"{self.config.operation_timeout} seconds"
                )
            await wait(
                self.config.operation_poll_interval, self.cancel_event, deadline
            )

    def _resource_group_url(self, name: str) -> URL:
        return (
            URL(self.config.api_base_url)
            / "subscriptions"
            / self.config.subscription_id
            / "resourcegroups"
            / name
        )

    def _network_url(self, resource_group: str, kind: str, name: str) -> URL:
        return (
            self._resource_group_url(resource_group)
            / "providers/Microsoft.Network"
            / kind
            / name
        )

    def _vm_url(self, resource_group: str, vm_name: str) -> URL:
        return (
            self._resource_group_url(resource_group)
            / "providers/Microsoft.Compute/virtualMachines"
            / vm_name
        )
