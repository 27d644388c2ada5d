"""Configuration for the Azure platform."""

from pydantic import BaseModel, Field, SecretStr


class ImageReference(BaseModel):
    """Marketplace image used for stand-in VMs."""

    publisher: str = "Canonical"
    offer: str = "0001-com-ubuntu-server-jammy"
    sku: str = "22_04-lts-gen2"
    version: str = "latest"


class AzureConfig(BaseModel):
    """Configuration for the Azure Resource Manager platform."""

    tenant_id: str
    client_id: str
    client_secret: SecretStr
    subscription_id: str
    api_base_url: str = "https://management.azure.com"
    login_base_url: str = "https://login.microsoftonline.com"
    operation_poll_interval: float = Field(default=5, ge=0)
    operation_timeout: float = Field(default=900, gt=0)
    standin_image: ImageReference = Field(default_factory=ImageReference)
    standin_admin_username: str = "sbadmin"
