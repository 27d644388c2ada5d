"""Azure platform module."""

from surebackup.platforms.azure.config import AzureConfig
from surebackup.platforms.azure.manifest import azure_manifest
from surebackup.platforms.azure.provider import AzurePlatform

__all__ = ["AzureConfig", "AzurePlatform", "azure_manifest"]
