"""Run options consumed by the restore-and-verify engine."""

from collections.abc import Sequence
from ipaddress import IPv4Network
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

type SoftCheckPolicy = Literal["always-pass", "strict"]


class RunConfig(BaseModel):
    """Configuration for one verification run."""

    test_region: str
    test_vm_size: str = "Standard_B2s"
    test_network_cidr: IPv4Network = IPv4Network("10.255.0.0/24")
    backup_job_filter: Sequence[str] = ()
    max_restore_point_age_days: int = Field(default=7, gt=0)
    max_vms_to_test: int = Field(default=3, gt=0)
    verification_ports: Sequence[int] = ()
    verification_script_path: Path | None = None
    boot_timeout_minutes: float = Field(default=15, gt=0)
    retain_test_environment: bool = False

    poll_interval_seconds: float = Field(default=30, ge=0)
    heartbeat_wait_seconds: float = Field(default=60, ge=0)
    guest_os: Literal["linux", "windows"] = "linux"
    # "always-pass" keeps heartbeat and port checks from ever failing a VM;
    # "strict" reports them as failed when the signal is absent.
    soft_check_policy: SoftCheckPolicy = "always-pass"
    enable_fallback: bool = True
    max_concurrency: int = Field(default=1, gt=0)
    cloud_job_keywords: Sequence[str] = ("azure", "cloud")

    @field_validator("verification_ports")
    @classmethod
    def _check_ports(cls, ports: Sequence[int]) -> Sequence[int]:
        for port in ports:
            if not 0 < port < 65536:
                raise ValueError(f"Invalid TCP port: {port}")
        return tuple(dict.fromkeys(ports))

    @field_validator("verification_script_path")
    @classmethod
    def _check_script(cls, path: Path | None) -> Path | None:
        if path is not None and not path.is_file():
            raise ValueError(f"Verification script not found: {path}")
        return path
