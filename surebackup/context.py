"""Explicit per-run state shared by the engine components."""

import asyncio
from dataclasses import dataclass, field

from surebackup.catalog.client import CatalogClient
from surebackup.models.restore import TestEnvironment
from surebackup.models.verification import VerificationResult
from surebackup.platforms.base import CloudPlatform


@dataclass(kw_only=True)
class RunContext:
    """State of one verification run.

    Holds the authenticated catalog client (and with it the shared token),
    the cloud platform, the environment once provisioned, the accumulated
    results and the cancellation signal observed by every poll loop.
    """

    catalog: CatalogClient
    platform: CloudPlatform
    environment: TestEnvironment | None = None
    results: list[VerificationResult] = field(default_factory=list)

    @property
    def cancel_event(self) -> asyncio.Event:
        """Cancellation signal, shared with the platform's own poll loops."""
        return self.platform.cancel_event

    def cancel(self) -> None:
        """Abort in-flight polls; cleanup still runs."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        """Whether the run was cancelled."""
        return self.cancel_event.is_set()

    def require_environment(self) -> TestEnvironment:
        """Return the provisioned environment."""
        if self.environment is None:
            raise RuntimeError("Test environment has not been provisioned")
        return self.environment
