"""Platform manifest definition for the plugin system."""

from collections.abc import Callable, Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from surebackup.platforms.base import CloudPlatform


@dataclass(frozen=True, kw_only=True)
class PlatformManifest[ConfigT: BaseModel]:
    """Manifest describing a cloud platform plugin.

    Platforms are registered under the ``surebackup.platforms`` entry point
    group and only imported once selected.
    """

    config_cls: type[ConfigT]
    platform_factory: Callable[[ConfigT], AbstractAsyncContextManager[CloudPlatform]]

    def connect(
        self, settings: Mapping[str, Any]
    ) -> AbstractAsyncContextManager[CloudPlatform]:
        """Validate raw platform settings and open the platform.

        Raises:
            pydantic.ValidationError: If the settings are invalid

        """
        return self.platform_factory(self.config_cls.model_validate(settings))
