"""Models for restore points, the isolated test environment and restores."""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import Field

from surebackup.models.base import Model

type RestoreStatus = Literal["success", "failed", "timeout"]
type RuleDirection = Literal["inbound", "outbound"]
type RuleAccess = Literal["allow", "deny"]

# Address tokens understood by every platform in addition to literal CIDRs.
ANY_ADDRESS = "*"
MANAGEMENT_PLANE = "management-plane"


class RestorePoint(Model):
    """A point-in-time backup of a single VM selected for testing."""

    backup_name: str = Field(..., description="Name of the parent backup")
    backup_id: str = Field(..., description="Catalog identifier of the backup")
    restore_point_id: str = Field(..., description="Catalog restore point id")
    vm_name: str = Field(..., description="Name of the protected source VM")
    creation_time: datetime = Field(..., description="When the point was taken")
    job_name: str | None = Field(default=None, description="Producing job name")


class SecurityRule(Model):
    """Platform-neutral network security rule.

    ``source`` and ``destination`` are CIDRs, ``ANY_ADDRESS`` or
    ``MANAGEMENT_PLANE`` (the platform's own agent/management range).
    Lower ``priority`` values are evaluated first.
    """

    name: str
    priority: int = Field(..., ge=100, le=4096)
    direction: RuleDirection
    access: RuleAccess
    source: str
    destination: str
    protocol: Literal["*", "tcp", "udp"] = "*"
    destination_ports: str = "*"


class TestEnvironment(Model):
    """Isolated network boundary shared by every test restore of a run."""

    __test__ = False

    resource_group_name: str
    region: str
    network_id: str
    subnet_id: str
    security_ruleset_id: str


@dataclass(frozen=True, kw_only=True)
class RestoreResult:
    """Terminal outcome of driving one restore point to a running test VM.

    ``degraded`` is set when the restore request itself failed and a
    stand-in VM was deployed instead: such a result proves the test
    environment works, not that the backup data is recoverable.
    """

    source_vm_name: str
    test_vm_name: str
    status: RestoreStatus
    duration: float
    error: str | None = None
    degraded: bool = False
    session_id: str | None = None
