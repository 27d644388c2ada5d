"""CLI entry point for automated restore verification."""

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from surebackup.catalog.client import CatalogClient
from surebackup.catalog.config import CatalogConfig
from surebackup.catalog.errors import CatalogError
from surebackup.config import RunConfig
from surebackup.context import RunContext
from surebackup.models.verification import VerificationResult
from surebackup.platforms.base import PlatformError
from surebackup.platforms.loading import (
    PlatformNotFoundError,
    available_platforms,
    load_platform_manifest,
)
from surebackup.polling import RunCancelledError
from surebackup.provisioner import ProvisioningError
from surebackup.runner import RunCoordinator

VERDICT_SYMBOLS = {
    "PASS": "✅",
    "PARTIAL": "⚠️",
    "FAIL": "❌",
}

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2


def log_results_summary(
    log: logging.Logger, results: Sequence[VerificationResult]
) -> None:
    """Log a formatted summary of verification verdicts."""
    log.info("=" * 80)
    log.info("Verification Results Summary:")
    log.info("=" * 80)

    for result in results:
        symbol = VERDICT_SYMBOLS.get(result.overall_result, "?")
        log.info(
            "%s %s -> %s: %s (%.2fs)%s",
            symbol,
            result.source_vm_name,
            result.test_vm_name,
            result.overall_result,
            result.duration,
            " [degraded: stand-in VM]" if result.degraded else "",
        )
        if result.details:
            log.info("  Details: %s", result.details)


def parse_csv(value: str) -> Sequence[str]:
    """Parse a comma-separated option."""
    return tuple(item.strip() for item in value.split(",") if item.strip())


def format_output(results: Sequence[VerificationResult]) -> dict[str, Any]:
    """Structure verdicts for the external result exporter."""
    all_results = [
        {
            "source_vm": result.source_vm_name,
            "test_vm": result.test_vm_name,
            "overall_result": result.overall_result,
            "boot_verified": result.boot_verified,
            "heartbeat_verified": result.heartbeat_verified,
            "ports_verified": result.ports_verified,
            "port_details": {str(k): v for k, v in result.port_details.items()},
            "script_verified": result.script_verified,
            "script_output": result.script_output,
            "degraded": result.degraded,
            "duration": result.duration,
            "details": result.details,
        }
        for result in results
    ]

    return {
        "total": len(all_results),
        "passed": sum(1 for r in all_results if r["overall_result"] == "PASS"),
        "partial": sum(1 for r in all_results if r["overall_result"] == "PARTIAL"),
        "failed": sum(1 for r in all_results if r["overall_result"] == "FAIL"),
        "degraded": sum(1 for r in all_results if r["degraded"]),
        "results": all_results,
    }


async def run(
    platform_key: str,
    platform_config_json: str,
    catalog_config_json: str,
    run_config: RunConfig,
) -> int:
    """Run the verification and return exit code."""
    log = logging.getLogger("surebackup")

    log.info("Loading platform: %s", platform_key)
    manifest = load_platform_manifest(platform_key)
    catalog_config = CatalogConfig.model_validate_json(catalog_config_json)

    async with (
        CatalogClient.from_config(catalog_config) as catalog,
        manifest.connect(json.loads(platform_config_json)) as platform,
    ):
        context = RunContext(catalog=catalog, platform=platform)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, context.cancel)

        results = await RunCoordinator(config=run_config).run(context)

    log_results_summary(log, results)
    print(json.dumps(format_output(results), indent=2))

    if any(result.overall_result == "FAIL" for result in results):
        return EXIT_FAILURES
    return EXIT_OK


def build_run_config(args: argparse.Namespace) -> RunConfig:
    """Build the run options from parsed arguments."""
    return RunConfig(
        test_region=args.region,
        test_vm_size=args.vm_size,
        test_network_cidr=args.network_cidr,
        backup_job_filter=parse_csv(args.job_filter),
        max_restore_point_age_days=args.max_age_days,
        max_vms_to_test=args.max_vms,
        verification_ports=[int(port) for port in parse_csv(args.ports)],
        verification_script_path=args.script,
        boot_timeout_minutes=args.boot_timeout,
        retain_test_environment=args.retain,
        guest_os=args.guest_os,
        soft_check_policy=args.soft_check_policy,
        enable_fallback=not args.no_fallback,
        max_concurrency=args.max_concurrency,
    )


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Restore sample backups into an isolated network and verify them"
    )
    parser.add_argument(
        "--platform",
        default="azure",
        help=f"Cloud platform key, one of {', '.join(available_platforms())}",
    )
    parser.add_argument(
        "--platform-config",
        required=True,
        help="JSON configuration for the cloud platform",
    )
    parser.add_argument(
        "--catalog-config",
        required=True,
        help="JSON configuration for the backup server",
    )
    parser.add_argument("--region", required=True, help="Region for test restores")
    parser.add_argument("--vm-size", default="Standard_B2s", help="Test VM size")
    parser.add_argument(
        "--network-cidr",
        default="10.255.0.0/24",
        help="Address space of the isolated network",
    )
    parser.add_argument(
        "--job-filter",
        default="",
        help="Comma-separated backup job names to restrict testing to",
    )
    parser.add_argument("--max-age-days", type=int, default=7)
    parser.add_argument("--max-vms", type=int, default=3)
    parser.add_argument(
        "--ports",
        default="",
        help="Comma-separated TCP ports expected to listen on restored VMs",
    )
    parser.add_argument(
        "--script",
        type=Path,
        default=None,
        help="Verification script executed inside each restored VM",
    )
    parser.add_argument(
        "--boot-timeout",
        type=float,
        default=15,
        help="Minutes to wait for a restored VM to run",
    )
    parser.add_argument(
        "--retain",
        action="store_true",
        help="Keep the test environment for inspection",
    )
    parser.add_argument("--guest-os", choices=["linux", "windows"], default="linux")
    parser.add_argument(
        "--soft-check-policy",
        choices=["always-pass", "strict"],
        default="always-pass",
        help="Whether missing heartbeat or open ports may fail a VM",
    )
    parser.add_argument(
        "--no-fallback",
        action="store_true",
        help="Do not deploy a stand-in VM when a restore request fails",
    )
    parser.add_argument("--max-concurrency", type=int, default=1)
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    log = logging.getLogger("surebackup")

    try:
        run_config = build_run_config(args)
        exit_code = asyncio.run(
            run(
                platform_key=args.platform,
                platform_config_json=args.platform_config,
                catalog_config_json=args.catalog_config,
                run_config=run_config,
            )
        )
    except (ValidationError, ValueError, PlatformNotFoundError) as e:
        log.error("Invalid configuration: %s", e)
        exit_code = EXIT_FATAL
    except (CatalogError, PlatformError, ProvisioningError) as e:
        log.error("Run aborted: %s", e)
        exit_code = EXIT_FATAL
    except (RunCancelledError, KeyboardInterrupt):
        log.error("Run cancelled")
        exit_code = EXIT_FATAL
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
