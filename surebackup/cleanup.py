"""Teardown of the isolated test environment."""

import logging
from dataclasses import dataclass
from typing import Literal

from surebackup.models.restore import TestEnvironment
from surebackup.platforms.base import CloudPlatform, PlatformError

log = logging.getLogger(__name__)

type CleanupOutcome = Literal["retained", "deleted", "failed"]


@dataclass(frozen=True, kw_only=True)
class CleanupManager:
    """Best-effort removal of the environment; never fails the run."""

    platform: CloudPlatform

    async def cleanup(
        self, environment: TestEnvironment, retain: bool
    ) -> CleanupOutcome:
        """Delete the environment unless it is to be retained."""
        name = environment.resource_group_name
        command = self.platform.manual_cleanup_command(name)

        if retain:
            log.info(
                "Retaining test environment %s as requested. Remove it manually "
                "when done: %s",
                name,
                command,
            )
            return "retained"

        log.info("Removing test environment %s", name)
        try:
            await self.platform.delete_resource_group(name)
        except Exception as e:
            log.warning(
                "Failed to remove test environment %s: %s. Remove it manually: %s",
                name,
                e,
                command,
                exc_info=not isinstance(e, PlatformError),
            )
            return "failed"

        log.info("Test environment %s removal started", name)
        return "deleted"
