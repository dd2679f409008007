"""GPU Verification Module.

Staged checks that tell "working", "needs a reboot" and "broken" apart.
"""

from .models import (
    CheckOutcome, FailureCause, OverallStatus, VerificationCheck, VerificationReport, classify,
)
from .probes import VENDOR_CHECKS, VendorChecks, VerificationContext
from .stages import (
    Stage, HardwareDetected, DriverLoaded, BootParametersActive, DeviceNodesPresent,
    VendorToolFunctional, ComputeFunctional, SandboxReachable, OptionalTooling,
)
from .pipeline import VerificationPipeline, verify

__all__ = [
    # Models
    "CheckOutcome",
    "FailureCause",
    "OverallStatus",
    "VerificationCheck",
    "VerificationReport",
    "classify",
    # Probes
    "VENDOR_CHECKS",
    "VendorChecks",
    "VerificationContext",
    # Stages
    "Stage",
    "HardwareDetected",
    "DriverLoaded",
    "BootParametersActive",
    "DeviceNodesPresent",
    "VendorToolFunctional",
    "ComputeFunctional",
    "SandboxReachable",
    "OptionalTooling",
    # Pipeline
    "VerificationPipeline",
    "verify",
]
