"""Models for verification outcomes."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Literal

type Verdict = Literal["PASS", "PARTIAL", "FAIL"]


@dataclass(frozen=True, kw_only=True)
class VerificationResult:
    """Composite verdict of the verification checks for one VM.

    This is the unit handed to the external result exporter.
    """

    source_vm_name: str
    test_vm_name: str
    boot_verified: bool = False
    heartbeat_verified: bool = False
    ports_verified: bool = False
    port_details: Mapping[int, bool] = field(default_factory=dict)
    script_verified: bool = False
    script_output: str | None = None
    overall_result: Verdict = "FAIL"
    details: str = ""
    degraded: bool = False
    duration: float = 0.0
