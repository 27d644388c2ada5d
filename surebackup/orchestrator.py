"""Restore state machine turning a restore point into a running test VM."""

import asyncio
import hashlib
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

from surebackup.catalog.errors import AuthenticationError, CatalogError
from surebackup.catalog.models import RestoreSession
from surebackup.config import RunConfig
from surebackup.context import RunContext
from surebackup.models.restore import RestorePoint, RestoreResult, RestoreStatus
from surebackup.platforms.base import PlatformError
from surebackup.polling import Deadline, wait

log = logging.getLogger(__name__)

TEST_VM_SUFFIX = "-sbtest"
MAX_VM_NAME_LENGTH = 64
DIGEST_LENGTH = 6


class RestoreState(StrEnum):
    """States of a single restore."""

    NOT_STARTED = "not-started"
    RESTORING = "restoring"
    POLLING = "polling"
    RUNNING = "running"
    FAILED = "failed"
    TIMED_OUT = "timed-out"


STATE_TO_STATUS: Mapping[RestoreState, RestoreStatus] = {
    RestoreState.RUNNING: "success",
    RestoreState.FAILED: "failed",
    RestoreState.TIMED_OUT: "timeout",
}


def restored_vm_name(source_vm_name: str, restore_point_id: str) -> str:
    """Derive a valid, recognisable VM name for the restored copy.

    A digest of the restore point keeps names apart when different source
    names sanitise to the same base.
    """
    base = re.sub(r"[^A-Za-z0-9-]+", "-", source_vm_name).strip("-").lower() or "vm"
    digest = hashlib.sha256(restore_point_id.encode()).hexdigest()[:DIGEST_LENGTH]
    suffix = f"-{digest}{TEST_VM_SUFFIX}"
    return f"{base[: MAX_VM_NAME_LENGTH - len(suffix)]}{suffix}"


@dataclass(frozen=True, kw_only=True)
class _Outcome:
    state: RestoreState
    error: str | None = None
    degraded: bool = False
    session_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class RestoreOrchestrator:
    """Drives one restore point through restore and readiness polling.

    If the restore request is rejected and the fallback is enabled, a
    stand-in VM is deployed instead. Its result is marked ``degraded``
    since it only shows that the test environment works.
    """

    config: RunConfig

    async def restore(self, context: RunContext, point: RestorePoint) -> RestoreResult:
        """Restore a point and wait until the VM runs, fails or times out.

        Errors scoped to this VM end up in the result. Authentication
        failures and cancellation propagate.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        vm_name = restored_vm_name(point.vm_name, point.restore_point_id)

        outcome = await self._run(context, point, vm_name)

        result = RestoreResult(
            source_vm_name=point.vm_name,
            test_vm_name=vm_name,
            status=STATE_TO_STATUS[outcome.state],
            duration=loop.time() - started,
            error=outcome.error,
            degraded=outcome.degraded,
            session_id=outcome.session_id,
        )
        log.info(
            "Restore of %s finished: status=%s degraded=%s duration=%.1fs",
            point.vm_name,
            result.status,
            result.degraded,
            result.duration,
        )
        return result

    async def _run(
        self, context: RunContext, point: RestorePoint, vm_name: str
    ) -> _Outcome:
        environment = context.require_environment()
        self._transition(point, RestoreState.NOT_STARTED, RestoreState.RESTORING)

        session: RestoreSession | None = None
        restore_error: str | None = None
        try:
            session = await context.catalog.start_restore(
                point, environment, vm_name, self.config.test_vm_size
            )
            log.info("Restore session %s started for %s", session.id, point.vm_name)
        except AuthenticationError:
            raise
        except CatalogError as e:
            restore_error = f"Restore request failed: {e}"
            if not self.config.enable_fallback:
                return self._finish(
                    point,
                    RestoreState.FAILED,
                    RestoreState.RESTORING,
                    error=restore_error,
                )

            log.warning(
                "%s; deploying stand-in VM %s to validate the test environment",
                restore_error,
                vm_name,
            )
            try:
                await context.platform.deploy_standin_vm(
                    environment, vm_name, self.config.test_vm_size
                )
            except PlatformError as fallback_error:
                return self._finish(
                    point,
                    RestoreState.FAILED,
                    RestoreState.RESTORING,
                    error=f"{restore_error}; "
                    f"stand-in deployment failed: {fallback_error}",
                )

        degraded = session is None
        session_id = session.id if session is not None else None

        self._transition(point, RestoreState.RESTORING, RestoreState.POLLING)
        timeout_minutes = self.config.boot_timeout_minutes
        deadline = Deadline.after(timeout_minutes * 60)

        try:
            if session is not None:
                session = await self._poll_session(context, session, deadline)
                if session is None:
                    return self._finish(
                        point,
                        RestoreState.TIMED_OUT,
                        RestoreState.POLLING,
                        error=f"Restore session did not finish within "
                        f"{timeout_minutes:g} minute(s)",
                        session_id=session_id,
                    )
                if session.is_failed:
                    message = session.result.message if session.result else None
                    return self._finish(
                        point,
                        RestoreState.FAILED,
                        RestoreState.POLLING,
                        error=f"Restore session {session.id} failed: "
                        f"{message or session.state}",
                        session_id=session_id,
                    )

            status = await context.platform.wait_until_running(
                environment.resource_group_name,
                vm_name,
                deadline,
                poll_interval=self.config.poll_interval_seconds,
                cancel_event=context.cancel_event,
            )
        except AuthenticationError:
            raise
        except (CatalogError, PlatformError) as e:
            return self._finish(
                point,
                RestoreState.FAILED,
                RestoreState.POLLING,
                error=f"Polling failed: {e}",
                degraded=degraded,
                session_id=session_id,
            )

        if status is not None and status.running:
            return self._finish(
                point,
                RestoreState.RUNNING,
                RestoreState.POLLING,
                error=restore_error,
                degraded=degraded,
                session_id=session_id,
            )
        if status is not None and status.failed:
            return self._finish(
                point,
                RestoreState.FAILED,
                RestoreState.POLLING,
                error=f"Provisioning of VM {vm_name} failed",
                degraded=degraded,
                session_id=session_id,
            )
        return self._finish(
            point,
            RestoreState.TIMED_OUT,
            RestoreState.POLLING,
            error=f"VM {vm_name} was not running within "
            f"{timeout_minutes:g} minute(s)",
            degraded=degraded,
            session_id=session_id,
        )

    async def _poll_session(
        self, context: RunContext, session: RestoreSession, deadline: Deadline
    ) -> RestoreSession | None:
        """Poll the restore session until it is terminal or the deadline passes."""
        while True:
            session = await context.catalog.get_restore_session(session.id)
            if session.is_terminal:
                log.info(
                    "Restore session %s reached state=%s", session.id, session.state
                )
                return session

            if deadline.expired:
                return None

            log.info("Restore session %s still in state=%s", session.id, session.state)
            await wait(
                self.config.poll_interval_seconds, context.cancel_event, deadline
            )

    def _finish(
        self,
        point: RestorePoint,
        state: RestoreState,
        previous: RestoreState,
        *,
        error: str | None = None,
        degraded: bool = False,
        session_id: str | None = None,
    ) -> _Outcome:
        self._transition(point, previous, state)
        if state is not RestoreState.RUNNING and error:
            log.error("Restore of %s: %s", point.vm_name, error)
        return _Outcome(
            state=state, error=error, degraded=degraded, session_id=session_id
        )

    @staticmethod
    def _transition(point: RestorePoint, old: RestoreState, new: RestoreState) -> None:
        log.info("Restore of %s: %s -> %s", point.vm_name, old, new)
