"""Abstract base class for cloud platforms hosting test restores."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from ipaddress import IPv4Network
from typing import Literal

from surebackup.models.restore import SecurityRule, TestEnvironment
from surebackup.polling import Deadline, wait

log = logging.getLogger(__name__)

type GuestOs = Literal["linux", "windows"]


class PlatformError(Exception):
    """Raised when a cloud management request fails."""


@dataclass(frozen=True, kw_only=True)
class VmStatus:
    """Observed state of a virtual machine."""

    power_state: str | None = None
    provisioning_state: str | None = None
    agent_ready: bool = False

    @property
    def running(self) -> bool:
        """Whether the VM is powered on."""
        return self.power_state == "running"

    @property
    def failed(self) -> bool:
        """Whether provisioning of the VM failed."""
        return self.provisioning_state == "failed"


@dataclass(frozen=True, kw_only=True)
class CommandResult:
    """Output of a command executed inside a VM."""

    stdout: str = ""
    stderr: str = ""


@dataclass(frozen=True, kw_only=True)
class NetworkHandle:
    """Identifiers of a created virtual network and its subnet."""

    network_id: str
    subnet_id: str


@dataclass(frozen=True, kw_only=True)
class CloudPlatform(ABC):
    """Abstract base for cloud platforms.

    Implementations create the isolated environment, observe VMs restored
    into it and run commands inside them through the platform agent. Their
    internal poll loops stop waiting once ``cancel_event`` is set.
    """

    cancel_event: asyncio.Event = field(
        default_factory=asyncio.Event, repr=False, compare=False
    )

    @abstractmethod
    async def create_resource_group(
        self, name: str, region: str, tags: Mapping[str, str]
    ) -> str:
        """Create a resource group and return its identifier."""

    @abstractmethod
    async def create_security_ruleset(
        self,
        resource_group: str,
        name: str,
        region: str,
        rules: Sequence[SecurityRule],
    ) -> str:
        """Create a ruleset enforcing ``rules`` and return its identifier."""

    @abstractmethod
    async def create_network(
        self,
        resource_group: str,
        name: str,
        region: str,
        cidr: IPv4Network,
        ruleset_id: str,
    ) -> NetworkHandle:
        """Create a network with one subnet guarded by the ruleset."""

    @abstractmethod
    async def get_vm_status(self, resource_group: str, vm_name: str) -> VmStatus | None:
        """Return the VM status, or None if the VM does not exist (yet)."""

    @abstractmethod
    async def run_command(
        self,
        resource_group: str,
        vm_name: str,
        script: Sequence[str],
        guest_os: GuestOs,
    ) -> CommandResult:
        """Run a script inside the VM via the platform agent."""

    @abstractmethod
    async def deploy_standin_vm(
        self, environment: TestEnvironment, vm_name: str, vm_size: str
    ) -> None:
        """Deploy a minimal VM from a stock image into the environment."""

    @abstractmethod
    async def delete_resource_group(self, name: str) -> None:
        """Start deletion of a resource group and everything in it."""

    def manual_cleanup_command(self, resource_group: str) -> str:
        """Command an operator can run to remove a leftover resource group."""
        return f"delete resource group {resource_group}"

    async def wait_until_running(
        self,
        resource_group: str,
        vm_name: str,
        deadline: Deadline,
        poll_interval: float = 30,
        cancel_event: asyncio.Event | None = None,
    ) -> VmStatus | None:
        """Poll the VM until it runs, fails to provision or the deadline passes.

        Returns:
            The last observed status (None if the VM never appeared)

        """
        status: VmStatus | None = None
        while True:
            status = await self.get_vm_status(resource_group, vm_name)
            if status is not None and (status.running or status.failed):
                return status

            if deadline.expired:
                return status

            log.info(
                "VM %s not running yet (power=%s, provisioning=%s)",
                vm_name,
                status.power_state if status else None,
                status.provisioning_state if status else None,
            )
            await wait(poll_interval, cancel_event, deadline)
