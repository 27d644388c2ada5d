"""Tests for CLI module."""

import argparse
import logging
from pathlib import Path
from unittest.mock import AsyncMock, Mock, patch

import pytest

from surebackup.catalog.errors import (
    AuthenticationError,
    CatalogRequestError,
    TransientCatalogError,
)
from surebackup.cli import (
    build_run_config,
    format_output,
    log_results_summary,
    main,
    parse_csv,
    run,
)
from surebackup.config import RunConfig
from surebackup.models.verification import VerificationResult
from surebackup.platforms.base import PlatformError
from surebackup.polling import RunCancelledError
from surebackup.testing.factories import VerificationResultFactory

CATALOG_CONFIG = '{"server": "vbr.example.com", "username": "u", "password": "p"}'


def test_log_results_summary_pass(caplog: pytest.LogCaptureFixture) -> None:
    """Logs passing verdicts with checkmark symbol."""
    results = [
        VerificationResult(
            source_vm_name="vm-a",
            test_vm_name="vm-a-sbtest",
            overall_result="PASS",
            duration=10.5,
        )
    ]

    with caplog.at_level(logging.INFO):
        log_results_summary(logging.getLogger(), results)

    assert "Verification Results Summary:" in caplog.text
    assert "✅ vm-a -> vm-a-sbtest: PASS (10.50s)" in caplog.text


def test_log_results_summary_fail_with_details(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Logs failing verdicts with their details."""
    results = [
        VerificationResult(
            source_vm_name="vm-a",
            test_vm_name="vm-a-sbtest",
            overall_result="FAIL",
            details="Restore timed out: VM not running",
        )
    ]

    with caplog.at_level(logging.INFO):
        log_results_summary(logging.getLogger(), results)

    assert "❌ vm-a -> vm-a-sbtest: FAIL" in caplog.text
    assert "Details: Restore timed out: VM not running" in caplog.text


def test_log_results_summary_degraded(caplog: pytest.LogCaptureFixture) -> None:
    """Marks results obtained from a stand-in VM."""
    results = [VerificationResultFactory.build(overall_result="PASS", degraded=True)]

    with caplog.at_level(logging.INFO):
        log_results_summary(logging.getLogger(), results)

    assert "[degraded: stand-in VM]" in caplog.text


def test_format_output_empty() -> None:
    """Returns empty totals when no results."""
    assert format_output([]) == {
        "total": 0,
        "passed": 0,
        "partial": 0,
        "failed": 0,
        "degraded": 0,
        "results": [],
    }


def test_format_output_mixed_results() -> None:
    """Formats mixed verdicts with correct totals."""
    results = [
        VerificationResultFactory.build(overall_result="PASS"),
        VerificationResultFactory.build(overall_result="PARTIAL", degraded=True),
        VerificationResultFactory.build(overall_result="FAIL"),
        VerificationResultFactory.build(overall_result="FAIL"),
    ]

    output = format_output(results)

    assert output["total"] == 4
    assert output["passed"] == 1
    assert output["partial"] == 1
    assert output["failed"] == 2
    assert output["degraded"] == 1


def test_format_output_port_details_keys() -> None:
    """Port numbers become string keys in the JSON hand-off."""
    result = VerificationResultFactory.build(
        source_vm_name="vm-a", port_details={22: True, 80: False}
    )

    output = format_output([result])

    assert output["results"][0]["source_vm"] == "vm-a"
    assert output["results"][0]["port_details"] == {"22": True, "80": False}


def test_parse_csv() -> None:
    """Splits and trims comma-separated values, dropping blanks."""
    assert parse_csv(" web , db,,") == ("web", "db")
    assert parse_csv("") == ()


def test_build_run_config(tmp_path: Path) -> None:
    """Maps parsed arguments onto the run configuration."""
    script = tmp_path / "check.sh"
    script.write_text("true\n")
    args = argparse.Namespace(
        region="westeurope",
        vm_size="Standard_B2s",
        network_cidr="10.255.0.0/24",
        job_filter="Azure Prod",
        max_age_days=3,
        max_vms=2,
        ports="22, 80",
        script=script,
        boot_timeout=5.0,
        retain=True,
        guest_os="linux",
        soft_check_policy="strict",
        no_fallback=True,
        max_concurrency=2,
    )

    config = build_run_config(args)

    assert config.backup_job_filter == ("Azure Prod",)
    assert config.verification_ports == (22, 80)
    assert config.verification_script_path == script
    assert config.retain_test_environment
    assert not config.enable_fallback
    assert config.soft_check_policy == "strict"


class TestRun:
    """Tests for run function."""

    @pytest.fixture
    def mock_context_manager(self) -> AsyncMock:
        """Create mock async context manager that yields a client."""
        cm = AsyncMock()
        cm.__aenter__.return_value = Mock()
        cm.__aexit__.return_value = None
        return cm

    async def _run(
        self, mock_context_manager: AsyncMock, results: list[VerificationResult]
    ) -> int:
        with (
            patch("surebackup.cli.load_platform_manifest") as mock_load_manifest,
            patch(
                "surebackup.cli.CatalogClient.from_config",
                return_value=mock_context_manager,
            ),
            patch("surebackup.cli.RunCoordinator") as mock_coordinator_cls,
        ):
            mock_manifest = Mock()
            mock_manifest.connect = Mock(return_value=mock_context_manager)
            mock_load_manifest.return_value = mock_manifest

            mock_coordinator = Mock()
            mock_coordinator.run = AsyncMock(return_value=results)
            mock_coordinator_cls.return_value = mock_coordinator

            return await run(
                platform_key="azure",
                platform_config_json='{"tenant_id": "t"}',
                catalog_config_json=CATALOG_CONFIG,
                run_config=RunConfig(test_region="westeurope"),
            )

    async def test_returns_zero_when_no_candidates(
        self, mock_context_manager: AsyncMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Returns 0 and prints empty results when nothing was tested."""
        exit_code = await self._run(mock_context_manager, [])

        assert exit_code == 0
        assert '"total": 0' in capsys.readouterr().out

    async def test_returns_zero_for_partial(
        self, mock_context_manager: AsyncMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Partial verdicts do not fail the run."""
        results = [
            VerificationResultFactory.build(overall_result="PASS"),
            VerificationResultFactory.build(overall_result="PARTIAL"),
        ]

        exit_code = await self._run(mock_context_manager, results)

        assert exit_code == 0
        assert '"partial": 1' in capsys.readouterr().out

    async def test_returns_one_when_any_vm_fails(
        self, mock_context_manager: AsyncMock
    ) -> None:
        """Returns 1 when any verdict is FAIL."""
        results = [
            VerificationResultFactory.build(overall_result="PASS"),
            VerificationResultFactory.build(overall_result="FAIL"),
        ]

        exit_code = await self._run(mock_context_manager, results)

        assert exit_code == 1

    async def test_passes_platform_settings(
        self, mock_context_manager: AsyncMock
    ) -> None:
        """Raw platform settings are handed to the manifest for validation."""
        with (
            patch("surebackup.cli.load_platform_manifest") as mock_load_manifest,
            patch(
                "surebackup.cli.CatalogClient.from_config",
                return_value=mock_context_manager,
            ),
            patch("surebackup.cli.RunCoordinator") as mock_coordinator_cls,
        ):
            mock_load_manifest.return_value.connect = Mock(
                return_value=mock_context_manager
            )
            mock_coordinator_cls.return_value.run = AsyncMock(return_value=[])

            await run(
                platform_key="azure",
                platform_config_json='{"tenant_id": "t"}',
                catalog_config_json=CATALOG_CONFIG,
                run_config=RunConfig(test_region="westeurope"),
            )

        mock_load_manifest.assert_called_once_with("azure")
        mock_load_manifest.return_value.connect.assert_called_once_with(
            {"tenant_id": "t"}
        )


class TestMain:
    """Tests for the main entry point."""

    @pytest.fixture(autouse=True)
    def argv(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Provide the minimal required arguments."""
        monkeypatch.setattr(
            "sys.argv",
            [
                "surebackup",
                "--platform-config",
                '{"tenant_id": "t"}',
                "--catalog-config",
                CATALOG_CONFIG,
                "--region",
                "westeurope",
            ],
        )

    def _exit_code(self, mock_run: AsyncMock) -> int | str | None:
        with (
            patch("surebackup.cli.run", new=mock_run),
            pytest.raises(SystemExit) as exc_info,
        ):
            main()
        return exc_info.value.code

    def test_exit_code_of_run_is_returned(self) -> None:
        """The verdict-based exit code of the run is the process exit code."""
        assert self._exit_code(AsyncMock(return_value=1)) == 1

    @pytest.mark.parametrize(
        "error",
        [
            CatalogRequestError("GET /api/v1/jobs failed: 403 Forbidden", status=403),
            TransientCatalogError("GET /api/v1/jobs failed: 503", status=503),
            AuthenticationError("Authentication to vbr.test failed"),
            PlatformError("Failed to obtain management token: 401"),
            RunCancelledError("Run cancelled"),
        ],
    )
    def test_fatal_errors_exit_two(self, error: Exception) -> None:
        """Errors that prevent discovering or testing any VM exit with 2."""
        assert self._exit_code(AsyncMock(side_effect=error)) == 2

    def test_invalid_configuration_exits_two(self) -> None:
        """Malformed configuration is fatal."""
        assert self._exit_code(AsyncMock(side_effect=ValueError("bad cidr"))) == 2
