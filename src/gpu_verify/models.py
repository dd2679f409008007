"""
Verification result types.

A report is a three-way outcome, not a boolean: a host that only needs a
reboot must not be treated like a broken one.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

HARDWARE_DETECTED = "HardwareDetected"
DRIVER_LOADED = "DriverLoaded"
BOOT_PARAMETERS_ACTIVE = "BootParametersActive"
DEVICE_NODES_PRESENT = "DeviceNodesPresent"
VENDOR_TOOL_FUNCTIONAL = "VendorToolFunctional"
COMPUTE_FUNCTIONAL = "ComputeFunctional"
SANDBOX_REACHABLE = "SandboxReachable"
OPTIONAL_TOOLING = "OptionalTooling"


class CheckOutcome(Enum):
    PASS = "pass"
    FAIL = "fail"
    UNKNOWN = "unknown"


class OverallStatus(Enum):
    PASS = "pass"
    REBOOT_REQUIRED = "reboot_required"
    FAIL = "fail"


class FailureCause(Enum):
    """Why a check failed. Values match the exception codes."""

    HARDWARE_NOT_FOUND = "HARDWARE_NOT_FOUND"
    DRIVER_NOT_LOADED = "DRIVER_NOT_LOADED"
    DEVICE_NODE_MISSING = "DEVICE_NODE_MISSING"
    DEVICE_NODE_UNRESOLVABLE = "DEVICE_NODE_UNRESOLVABLE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    TOOL_MISSING = "TOOL_MISSING"
    TOOL_NON_FUNCTIONAL = "TOOL_NON_FUNCTIONAL"
    TIMEOUT = "TIMEOUT"
    BOOT_PARAMS_PENDING = "BOOT_PARAMS_PENDING"
    BOOT_PARAMS_MISSING = "BOOT_PARAMS_MISSING"


@dataclass
class VerificationCheck:
    """Result of one pipeline stage."""

    name: str
    required: bool
    outcome: CheckOutcome = CheckOutcome.UNKNOWN
    message: str = ""
    cause: Optional[FailureCause] = None
    hint: str = ""
    # Failure expected to clear after a reboot (driver installed, params persisted)
    reboot_pending: bool = False
    details: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.outcome is CheckOutcome.PASS

    @property
    def failed(self) -> bool:
        return self.outcome is CheckOutcome.FAIL

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "required": self.required,
            "outcome": self.outcome.value,
            "message": self.message,
            "cause": self.cause.value if self.cause else None,
            "hint": self.hint,
            "reboot_pending": self.reboot_pending,
            "details": list(self.details),
            "duration": round(self.duration, 3),
        }


def classify(checks: List[VerificationCheck]) -> OverallStatus:
    """
    Derive the overall status from ordered checks.

    Hardware absence is always FAIL. Otherwise a required failure that a
    reboot would clear makes the result REBOOT_REQUIRED; all required
    checks passing is PASS; anything else is FAIL.
    """
    hardware = next((c for c in checks if c.name == HARDWARE_DETECTED), None)
    if hardware is None or not hardware.passed:
        return OverallStatus.FAIL

    required = [c for c in checks if c.required]
    if any(c.failed and c.reboot_pending for c in required):
        return OverallStatus.REBOOT_REQUIRED
    if all(c.passed for c in required):
        return OverallStatus.PASS
    return OverallStatus.FAIL


EXIT_CODES = {
    OverallStatus.PASS: 0,
    OverallStatus.FAIL: 1,
    OverallStatus.REBOOT_REQUIRED: 3,
}


@dataclass
class VerificationReport:
    """Ordered checks for one verification run."""

    vendor: str
    checks: List[VerificationCheck] = field(default_factory=list)
    pci_address: Optional[str] = None
    container_id: Optional[str] = None

    @property
    def overall_status(self) -> OverallStatus:
        return classify(self.checks)

    @property
    def passed(self) -> int:
        return sum(1 for c in self.checks if c.passed)

    @property
    def total(self) -> int:
        return len(self.checks)

    @property
    def failed_required(self) -> List[VerificationCheck]:
        return [c for c in self.checks if c.required and not c.passed]

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.overall_status]

    def get(self, name: str) -> Optional[VerificationCheck]:
        return next((c for c in self.checks if c.name == name), None)

    def to_dict(self) -> dict:
        return {
            "vendor": self.vendor,
            "pci_address": self.pci_address,
            "container_id": self.container_id,
            "overall_status": self.overall_status.value,
            "passed": self.passed,
            "total": self.total,
            "checks": [c.to_dict() for c in self.checks],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def print_summary(self) -> None:
        """Print a human-readable report."""
        target = f" ({self.pci_address})" if self.pci_address else ""
        print(f"=== {self.vendor.upper()} GPU Verification{target} ===\n")

        for check in self.checks:
            if check.passed:
                mark = "✅"
            elif not check.required:
                mark = "ℹ️ "
            elif check.reboot_pending:
                mark = "⚠️ "
            elif check.failed:
                mark = "❌"
            else:
                mark = "❔"
            print(f"{mark} {check.name}: {check.message}")
            for detail in check.details:
                print(f"     {detail}")
            if check.hint and not check.passed:
                print(f"     → {check.hint}")

        print()
        status = self.overall_status
        summary = f"({self.passed}/{self.total} passed)"
        if status is OverallStatus.PASS:
            print(f"✅ ALL CHECKS PASSED {summary}")
        elif status is OverallStatus.REBOOT_REQUIRED:
            print(f"⚠️  REBOOT REQUIRED {summary}")
        else:
            failed = ", ".join(c.name for c in self.failed_required)
            print(f"❌ VERIFICATION FAILED {summary}: {failed}")
