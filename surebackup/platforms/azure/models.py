"""Pydantic models for Azure Resource Manager API responses."""

from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, Field


class ArmModel(BaseModel):
    """Response model tolerant of extra fields."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TokenResponse(ArmModel):
    """Response from the Entra ID token endpoint."""

    access_token: str
    expires_in: int = 3599


class ResourceProperties(ArmModel):
    """Properties shared by every tracked resource."""

    provisioning_state: str | None = Field(default=None, alias="provisioningState")


class Resource(ArmModel):
    """A tracked ARM resource."""

    id: str
    name: str
    properties: ResourceProperties = Field(default_factory=ResourceProperties)


class Subnet(ArmModel):
    """A subnet of a virtual network."""

    id: str
    name: str


class VirtualNetworkProperties(ResourceProperties):
    """Properties of a virtual network."""

    subnets: Sequence[Subnet] = Field(default_factory=list)


class VirtualNetwork(Resource):
    """A virtual network."""

    properties: VirtualNetworkProperties = Field(
        default_factory=VirtualNetworkProperties
    )


class InstanceViewStatus(ArmModel):
    """One status entry of an instance view or command output."""

    code: str
    level: str | None = None
    display_status: str | None = Field(default=None, alias="displayStatus")
    message: str | None = None


class VmAgent(ArmModel):
    """The VM agent block of an instance view."""

    vm_agent_version: str | None = Field(default=None, alias="vmAgentVersion")
    statuses: Sequence[InstanceViewStatus] = Field(default_factory=list)


class InstanceView(ArmModel):
    """Runtime view of a virtual machine."""

    statuses: Sequence[InstanceViewStatus] = Field(default_factory=list)
    vm_agent: VmAgent | None = Field(default=None, alias="vmAgent")

    def status_value(self, prefix: str) -> str | None:
        """Return the value of the first ``<prefix>/<value>`` status code."""
        for status in self.statuses:
            head, _, value = status.code.partition("/")
            if head == prefix:
                return value.split("/")[0].lower()
        return None

    @property
    def agent_ready(self) -> bool:
        """Whether the VM agent reports itself ready."""
        if self.vm_agent is None:
            return False
        return any(
            status.display_status == "Ready" for status in self.vm_agent.statuses
        )


class RunCommandOutput(ArmModel):
    """Result of a run command invocation."""

    value: Sequence[InstanceViewStatus] = Field(default_factory=list)
