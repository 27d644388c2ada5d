"""Provisioning of the isolated test environment."""

import logging
import secrets
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from ipaddress import IPv4Network

from surebackup.models.restore import (
    ANY_ADDRESS,
    MANAGEMENT_PLANE,
    SecurityRule,
    TestEnvironment,
)
from surebackup.platforms.base import CloudPlatform, PlatformError
from surebackup.polling import RunCancelledError

log = logging.getLogger(__name__)

ENVIRONMENT_PREFIX = "surebackup-test"


class ProvisioningError(Exception):
    """Raised when the isolated environment could not be created."""


def isolation_rules(cidr: IPv4Network) -> Sequence[SecurityRule]:
    """Deny-by-default rules confining test VMs to their own network.

    Only traffic inside the isolated network and outbound traffic to the
    platform's management plane is allowed. The allow rules carry lower
    priority values than the catch-all denies so they are evaluated first.
    """
    network = str(cidr)
    return [
        SecurityRule(
            name="allow-isolated-inbound",
            priority=100,
            direction="inbound",
            access="allow",
            source=network,
            destination=network,
        ),
        SecurityRule(
            name="deny-all-inbound",
            priority=4096,
            direction="inbound",
            access="deny",
            source=ANY_ADDRESS,
            destination=ANY_ADDRESS,
        ),
        SecurityRule(
            name="allow-isolated-outbound",
            priority=100,
            direction="outbound",
            access="allow",
            source=network,
            destination=network,
        ),
        SecurityRule(
            name="allow-management-outbound",
            priority=110,
            direction="outbound",
            access="allow",
            source=network,
            destination=MANAGEMENT_PLANE,
        ),
        SecurityRule(
            name="deny-all-outbound",
            priority=4096,
            direction="outbound",
            access="deny",
            source=ANY_ADDRESS,
            destination=ANY_ADDRESS,
        ),
    ]


def _default_name() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{ENVIRONMENT_PREFIX}-{stamp}-{secrets.token_hex(3)}"


@dataclass(frozen=True, kw_only=True)
class EnvironmentProvisioner:
    """Creates a fresh, uniquely named isolated environment per run."""

    platform: CloudPlatform
    name_factory: Callable[[], str] = field(default=_default_name, repr=False)

    async def provision(self, region: str, cidr: IPv4Network) -> TestEnvironment:
        """Create resource group, security ruleset and network.

        Raises:
            ProvisioningError: If any step fails; a partially created
                resource group is removed before raising

        """
        name = self.name_factory()
        log.info("Provisioning isolated test environment %s in %s", name, region)

        try:
            await self.platform.create_resource_group(
                name, region, {"purpose": "surebackup", "created-by": "surebackup"}
            )
        except PlatformError as e:
            raise ProvisioningError(
                f"Failed to create resource group {name}: {e}"
            ) from e

        try:
            ruleset_id = await self.platform.create_security_ruleset(
                name, f"{name}-nsg", region, isolation_rules(cidr)
            )
            network = await self.platform.create_network(
                name, f"{name}-vnet", region, cidr, ruleset_id
            )
        except PlatformError as e:
            log.error("Provisioning of %s failed, removing partial resources", name)
            await self._remove_partial(name)
            raise ProvisioningError(
                f"Failed to provision network in {name}: {e}"
            ) from e
        except RunCancelledError:
            log.warning("Provisioning of %s cancelled, removing partial group", name)
            await self._remove_partial(name)
            raise

        environment = TestEnvironment(
            resource_group_name=name,
            region=region,
            network_id=network.network_id,
            subnet_id=network.subnet_id,
            security_ruleset_id=ruleset_id,
        )
        log.info("Test environment %s ready (subnet %s)", name, network.subnet_id)
        return environment

    async def _remove_partial(self, name: str) -> None:
        try:
            await self.platform.delete_resource_group(name)
        except PlatformError as e:
            log.warning(
                "Could not remove partial environment %s: %s. Run: %s",
                name,
                e,
                self.platform.manual_cleanup_command(name),
            )
