"""Tests for the restore state machine."""

from unittest.mock import Mock

import pytest

from surebackup.catalog.errors import (
    AuthenticationError,
    CatalogRequestError,
    TransientCatalogError,
)
from surebackup.catalog.models import RestoreSession
from surebackup.config import RunConfig
from surebackup.context import RunContext
from surebackup.models.restore import RestorePoint, TestEnvironment
from surebackup.orchestrator import RestoreOrchestrator, restored_vm_name
from surebackup.platforms.base import VmStatus
from surebackup.polling import RunCancelledError
from surebackup.testing.catalog import payloads
from surebackup.testing.factories import RestorePointFactory
from surebackup.testing.platform import STOPPED, FakePlatform


def _session(**kwargs: str) -> RestoreSession:
    return RestoreSession.model_validate(payloads.restore_session(**kwargs))


@pytest.fixture
def point() -> RestorePoint:
    """Create restore point of vm-a."""
    return RestorePointFactory.build(vm_name="vm-a")


@pytest.fixture
def orchestrator(run_config: RunConfig) -> RestoreOrchestrator:
    """Create orchestrator with fast polling."""
    return RestoreOrchestrator(config=run_config)


def _with_platform(
    catalog: Mock, environment: TestEnvironment, platform: FakePlatform
) -> RunContext:
    return RunContext(catalog=catalog, platform=platform, environment=environment)


class TestRestoredVmName:
    """Tests for restored_vm_name."""

    def test_named_after_source(self) -> None:
        """The restored VM is recognisable by its source name."""
        name = restored_vm_name("web-01", "rp-1")

        assert name.startswith("web-01-")
        assert name.endswith("-sbtest")

    def test_invalid_characters_replaced(self) -> None:
        """Characters invalid in VM names are replaced."""
        assert restored_vm_name("SQL_Server 2019", "rp-1").startswith(
            "sql-server-2019-"
        )

    def test_stable_per_restore_point(self) -> None:
        """The same restore point always maps to the same name."""
        assert restored_vm_name("web-01", "rp-1") == restored_vm_name("web-01", "rp-1")

    def test_colliding_sources_get_distinct_names(self) -> None:
        """Sources that sanitise alike still restore into different VMs."""
        assert restored_vm_name("app_01", "rp-1") != restored_vm_name("app.01", "rp-2")

    def test_length_bounded(self) -> None:
        """Long names are truncated to keep the suffix."""
        name = restored_vm_name("x" * 100, "rp-1")

        assert len(name) == 64
        assert name.endswith("-sbtest")


class TestRestore:
    """Tests for RestoreOrchestrator.restore."""

    async def test_success(
        self,
        orchestrator: RestoreOrchestrator,
        context: RunContext,
        catalog_mock: Mock,
        point: RestorePoint,
    ) -> None:
        """A completed session and a running VM yield success."""
        catalog_mock.start_restore.return_value = _session()
        catalog_mock.get_restore_session.return_value = _session(
            state="Stopped", result="Success"
        )

        result = await orchestrator.restore(context, point)

        assert result.status == "success"
        assert result.source_vm_name == "vm-a"
        assert result.test_vm_name == restored_vm_name("vm-a", point.restore_point_id)
        assert result.session_id == "session-1"
        assert not result.degraded
        assert result.error is None
        assert result.duration >= 0

    async def test_restore_requested_into_environment(
        self,
        orchestrator: RestoreOrchestrator,
        context: RunContext,
        catalog_mock: Mock,
        environment: TestEnvironment,
        point: RestorePoint,
    ) -> None:
        """The restore targets the isolated environment with the test VM name."""
        catalog_mock.start_restore.return_value = _session()
        catalog_mock.get_restore_session.return_value = _session(state="Stopped")

        await orchestrator.restore(context, point)

        catalog_mock.start_restore.assert_awaited_once_with(
            point,
            environment,
            restored_vm_name("vm-a", point.restore_point_id),
            "Standard_B2s",
        )

    async def test_failed_session(
        self,
        orchestrator: RestoreOrchestrator,
        context: RunContext,
        catalog_mock: Mock,
        point: RestorePoint,
    ) -> None:
        """A session ending in failure yields failed with its message."""
        catalog_mock.start_restore.return_value = _session()
        catalog_mock.get_restore_session.return_value = _session(
            state="Stopped", result="Failed", message="Disk not accessible"
        )

        result = await orchestrator.restore(context, point)

        assert result.status == "failed"
        assert "Disk not accessible" in (result.error or "")

    async def test_session_never_finishes(
        self,
        context: RunContext,
        catalog_mock: Mock,
        point: RestorePoint,
    ) -> None:
        """A session still working at the deadline yields timeout."""
        config = RunConfig(
            test_region="westeurope",
            poll_interval_seconds=0.01,
            boot_timeout_minutes=0.001,
        )
        catalog_mock.start_restore.return_value = _session()
        catalog_mock.get_restore_session.return_value = _session(state="Working")

        result = await RestoreOrchestrator(config=config).restore(context, point)

        assert result.status == "timeout"
        assert "did not finish" in (result.error or "")

    async def test_vm_never_running(
        self,
        catalog_mock: Mock,
        environment: TestEnvironment,
        point: RestorePoint,
    ) -> None:
        """A VM that never powers on within the boot timeout yields timeout."""
        config = RunConfig(
            test_region="westeurope",
            poll_interval_seconds=0.01,
            boot_timeout_minutes=0.001,
        )
        context = _with_platform(
            catalog_mock, environment, FakePlatform(vm_statuses=(STOPPED,))
        )
        catalog_mock.start_restore.return_value = _session()
        catalog_mock.get_restore_session.return_value = _session(state="Stopped")

        result = await RestoreOrchestrator(config=config).restore(context, point)

        assert result.status == "timeout"
        assert "was not running" in (result.error or "")

    async def test_vm_appears_later(
        self,
        orchestrator: RestoreOrchestrator,
        catalog_mock: Mock,
        environment: TestEnvironment,
        point: RestorePoint,
    ) -> None:
        """Polling continues until the VM exists and runs."""
        platform = FakePlatform(
            vm_statuses=(None, STOPPED, VmStatus(power_state="running"))
        )
        context = _with_platform(catalog_mock, environment, platform)
        catalog_mock.start_restore.return_value = _session()
        catalog_mock.get_restore_session.return_value = _session(state="Stopped")

        result = await orchestrator.restore(context, point)

        assert result.status == "success"

    async def test_vm_provisioning_failed(
        self,
        orchestrator: RestoreOrchestrator,
        catalog_mock: Mock,
        environment: TestEnvironment,
        point: RestorePoint,
    ) -> None:
        """A VM whose provisioning failed yields failed."""
        platform = FakePlatform(vm_statuses=(VmStatus(provisioning_state="failed"),))
        context = _with_platform(catalog_mock, environment, platform)
        catalog_mock.start_restore.return_value = _session()
        catalog_mock.get_restore_session.return_value = _session(state="Stopped")

        result = await orchestrator.restore(context, point)

        assert result.status == "failed"

    async def test_polling_error(
        self,
        orchestrator: RestoreOrchestrator,
        context: RunContext,
        catalog_mock: Mock,
        point: RestorePoint,
    ) -> None:
        """A catalog failure while polling yields failed for this VM only."""
        catalog_mock.start_restore.return_value = _session()
        catalog_mock.get_restore_session.side_effect = TransientCatalogError("503")

        result = await orchestrator.restore(context, point)

        assert result.status == "failed"
        assert (result.error or "").startswith("Polling failed")

    async def test_authentication_error_propagates(
        self,
        orchestrator: RestoreOrchestrator,
        context: RunContext,
        catalog_mock: Mock,
        point: RestorePoint,
    ) -> None:
        """Authentication failures abort instead of failing one VM."""
        catalog_mock.start_restore.side_effect = AuthenticationError("expired")

        with pytest.raises(AuthenticationError):
            await orchestrator.restore(context, point)

    async def test_cancellation_propagates(
        self,
        orchestrator: RestoreOrchestrator,
        context: RunContext,
        catalog_mock: Mock,
        point: RestorePoint,
    ) -> None:
        """A cancelled run stops polling."""
        catalog_mock.start_restore.return_value = _session()
        catalog_mock.get_restore_session.return_value = _session(state="Working")
        context.cancel()

        with pytest.raises(RunCancelledError):
            await orchestrator.restore(context, point)


class TestFallback:
    """Tests for the stand-in VM fallback."""

    async def test_standin_deployed_on_rejected_restore(
        self,
        orchestrator: RestoreOrchestrator,
        context: RunContext,
        catalog_mock: Mock,
        platform: FakePlatform,
        point: RestorePoint,
    ) -> None:
        """A rejected restore deploys a stand-in VM and is marked degraded."""
        catalog_mock.start_restore.side_effect = CatalogRequestError("400 invalid")

        result = await orchestrator.restore(context, point)

        assert platform.calls == [
            f"deploy_standin_vm:{restored_vm_name('vm-a', point.restore_point_id)}"
        ]
        assert result.status == "success"
        assert result.degraded
        assert result.session_id is None
        assert "Restore request failed" in (result.error or "")
        catalog_mock.get_restore_session.assert_not_awaited()

    async def test_fallback_disabled(
        self,
        context: RunContext,
        catalog_mock: Mock,
        platform: FakePlatform,
        point: RestorePoint,
    ) -> None:
        """Without fallback a rejected restore fails the VM."""
        config = RunConfig(test_region="westeurope", enable_fallback=False)
        catalog_mock.start_restore.side_effect = CatalogRequestError("400 invalid")

        result = await RestoreOrchestrator(config=config).restore(context, point)

        assert result.status == "failed"
        assert not result.degraded
        assert platform.calls == []

    async def test_standin_deployment_fails(
        self,
        orchestrator: RestoreOrchestrator,
        catalog_mock: Mock,
        environment: TestEnvironment,
        point: RestorePoint,
    ) -> None:
        """A failing stand-in deployment yields failed with both errors."""
        context = _with_platform(
            catalog_mock, environment, FakePlatform(fail_deploy=True)
        )
        catalog_mock.start_restore.side_effect = CatalogRequestError("400 invalid")

        result = await orchestrator.restore(context, point)

        assert result.status == "failed"
        assert "400 invalid" in (result.error or "")
        assert "image not available" in (result.error or "")
