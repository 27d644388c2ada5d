"""Verification checks run against a restored VM."""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from surebackup.config import RunConfig
from surebackup.context import RunContext
from surebackup.models.restore import RestorePoint, RestoreResult
from surebackup.models.verification import VerificationResult, Verdict
from surebackup.platforms.base import GuestOs, PlatformError
from surebackup.polling import wait

log = logging.getLogger(__name__)

DEGRADED_NOTICE = (
    "Degraded: restore request failed and a stand-in VM was deployed; "
    "the test environment works but backup data was not validated"
)


def compute_verdict(
    boot: bool, heartbeat: bool, ports: bool, script: bool
) -> Verdict:
    """Roll the check outcomes up into a composite verdict.

    Boot is the hard gate: without it the verdict is always FAIL.
    """
    if not boot:
        return "FAIL"
    if heartbeat and ports and script:
        return "PASS"
    return "PARTIAL"


def port_probe_script(ports: Sequence[int], guest_os: GuestOs) -> Sequence[str]:
    """Script printing ``<port>:open`` or ``<port>:closed`` per TCP port."""
    if guest_os == "windows":
        return [
            f"if (Get-NetTCPConnection -State Listen -LocalPort {port} "
            f"-ErrorAction SilentlyContinue) {{ '{port}:open' }} "
            f"else {{ '{port}:closed' }}"
            for port in ports
        ]
    return [
        f"if ss -Htln 'sport = :{port}' | grep -q .; "
        f"then echo '{port}:open'; else echo '{port}:closed'; fi"
        for port in ports
    ]


def parse_port_probe(output: str, ports: Sequence[int]) -> Mapping[int, bool]:
    """Map each requested port to whether the probe saw it listening."""
    seen: dict[int, bool] = {}
    for line in output.splitlines():
        port, sep, state = line.strip().partition(":")
        if sep and port.isdigit():
            seen[int(port)] = state.strip() == "open"
    return {port: seen.get(port, False) for port in ports}


@dataclass(frozen=True, kw_only=True)
class CheckOutcome:
    """Outcome of one verification check."""

    verified: bool
    detail: str


@dataclass(frozen=True, kw_only=True)
class VerificationPipeline:
    """Runs boot, heartbeat, port and script checks in that order."""

    config: RunConfig

    @property
    def soft_checks_pass(self) -> bool:
        """Whether heartbeat and port checks are reported verified regardless."""
        return self.config.soft_check_policy == "always-pass"

    async def verify(
        self,
        context: RunContext,
        restore_result: RestoreResult,
        point: RestorePoint,
    ) -> VerificationResult:
        """Verify a restored VM and derive its verdict."""
        started = asyncio.get_running_loop().time()
        details: list[str] = []
        if restore_result.degraded:
            details.append(DEGRADED_NOTICE)

        if restore_result.status != "success":
            label = "timed out" if restore_result.status == "timeout" else "failed"
            details.append(f"Restore {label}: {restore_result.error or 'no details'}")
            return self._result(
                restore_result, point, started, details, overall_result="FAIL"
            )

        resource_group = context.require_environment().resource_group_name
        vm_name = restore_result.test_vm_name

        boot = await self._check_boot(context, resource_group, vm_name)
        details.append(f"Boot: {boot.detail}")
        if not boot.verified:
            details.append("Remaining checks skipped: VM is not running")
            return self._result(
                restore_result, point, started, details, overall_result="FAIL"
            )

        heartbeat = await self._check_heartbeat(context, resource_group, vm_name)
        details.append(f"Heartbeat: {heartbeat.detail}")

        ports, port_details = await self._check_ports(context, resource_group, vm_name)
        details.append(f"Ports: {ports.detail}")

        script, script_output = await self._check_script(
            context, resource_group, vm_name
        )
        details.append(f"Script: {script.detail}")

        verdict = compute_verdict(
            boot.verified, heartbeat.verified, ports.verified, script.verified
        )
        log.info("Verification of %s: %s", point.vm_name, verdict)
        return self._result(
            restore_result,
            point,
            started,
            details,
            overall_result=verdict,
            boot_verified=boot.verified,
            heartbeat_verified=heartbeat.verified,
            ports_verified=ports.verified,
            port_details=port_details,
            script_verified=script.verified,
            script_output=script_output,
        )

    def _soft_failure(self, detail: str) -> CheckOutcome:
        """Outcome of a soft check whose signal was absent."""
        if self.soft_checks_pass:
            return CheckOutcome(
                verified=True, detail=f"{detail} (soft check, treated as verified)"
            )
        return CheckOutcome(verified=False, detail=detail)

    async def _check_boot(
        self, context: RunContext, resource_group: str, vm_name: str
    ) -> CheckOutcome:
        try:
            status = await context.platform.get_vm_status(resource_group, vm_name)
        except PlatformError as e:
            log.error("Boot check of %s failed: %s", vm_name, e)
            return CheckOutcome(verified=False, detail=f"status query failed: {e}")

        if status is None:
            return CheckOutcome(verified=False, detail="VM not found")
        if not status.running:
            return CheckOutcome(
                verified=False, detail=f"power state is {status.power_state}"
            )
        return CheckOutcome(verified=True, detail="VM running")

    async def _check_heartbeat(
        self, context: RunContext, resource_group: str, vm_name: str
    ) -> CheckOutcome:
        if await self._agent_ready(context, resource_group, vm_name):
            return CheckOutcome(verified=True, detail="agent ready")

        wait_seconds = self.config.heartbeat_wait_seconds
        log.info("Agent of %s not ready, re-checking in %.0fs", vm_name, wait_seconds)
        await wait(wait_seconds, context.cancel_event)

        if await self._agent_ready(context, resource_group, vm_name):
            return CheckOutcome(
                verified=True, detail=f"agent ready after {wait_seconds:g}s"
            )

        log.warning("Agent of %s still not ready after %.0fs", vm_name, wait_seconds)
        return self._soft_failure(f"agent not ready after {wait_seconds:g}s")

    async def _agent_ready(
        self, context: RunContext, resource_group: str, vm_name: str
    ) -> bool:
        try:
            status = await context.platform.get_vm_status(resource_group, vm_name)
        except PlatformError as e:
            log.warning("Agent status query for %s failed: %s", vm_name, e)
            return False
        return status is not None and status.agent_ready

    async def _check_ports(
        self, context: RunContext, resource_group: str, vm_name: str
    ) -> tuple[CheckOutcome, Mapping[int, bool]]:
        ports = self.config.verification_ports
        if not ports:
            return CheckOutcome(verified=True, detail="no ports configured"), {}

        try:
            result = await context.platform.run_command(
                resource_group,
                vm_name,
                port_probe_script(ports, self.config.guest_os),
                self.config.guest_os,
            )
        except PlatformError as e:
            log.warning("Port probe on %s failed: %s", vm_name, e)
            return (
                self._soft_failure(f"probe failed: {e}"),
                {port: False for port in ports},
            )

        port_details = parse_port_probe(result.stdout, ports)
        listening = [port for port, is_open in port_details.items() if is_open]
        if listening:
            detail = f"listening on {', '.join(map(str, listening))}"
            return CheckOutcome(verified=True, detail=detail), port_details

        log.warning("None of ports %s listening on %s", list(ports), vm_name)
        return self._soft_failure("no requested port listening"), port_details

    async def _check_script(
        self, context: RunContext, resource_group: str, vm_name: str
    ) -> tuple[CheckOutcome, str | None]:
        script_path = self.config.verification_script_path
        if script_path is None:
            return CheckOutcome(verified=True, detail="not configured"), None

        try:
            script = script_path.read_text().splitlines()
        except OSError as e:
            return CheckOutcome(verified=False, detail=f"cannot read script: {e}"), None

        try:
            result = await context.platform.run_command(
                resource_group, vm_name, script, self.config.guest_os
            )
        except PlatformError as e:
            log.error("Verification script on %s failed: %s", vm_name, e)
            return CheckOutcome(verified=False, detail=f"execution failed: {e}"), str(e)

        if result.stderr.strip():
            output = "\n".join(filter(None, [result.stdout, result.stderr]))
            return CheckOutcome(verified=False, detail="script wrote to stderr"), output
        return CheckOutcome(verified=True, detail="script succeeded"), result.stdout

    def _result(
        self,
        restore_result: RestoreResult,
        point: RestorePoint,
        started: float,
        details: Sequence[str],
        **checks: object,
    ) -> VerificationResult:
        elapsed = asyncio.get_running_loop().time() - started
        return VerificationResult(
            source_vm_name=point.vm_name,
            test_vm_name=restore_result.test_vm_name,
            details="; ".join(details),
            degraded=restore_result.degraded,
            duration=restore_result.duration + elapsed,
            **checks,  # type: ignore[arg-type]
        )
