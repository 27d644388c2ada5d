"""Azure platform manifest."""

from surebackup.platforms.azure.config import AzureConfig
from surebackup.platforms.azure.provider import AzurePlatform
from surebackup.platforms.manifest import PlatformManifest

azure_manifest = PlatformManifest(
    config_cls=AzureConfig,
    platform_factory=AzurePlatform.from_config,
)
