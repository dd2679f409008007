"""
Verification Pipeline

Runs an explicit, ordered list of stages. Failures are accumulated so one
run shows the whole diagnostic picture; only a failed terminal stage
(hardware absence) stops the run early.
"""

from __future__ import annotations

import logging
import time
from typing import List, Optional, Sequence

from common.exceptions import GpuSetupError
from common.logging_config import LogContext
from hardware_detect.gpu_scanner import Vendor

from .models import CheckOutcome, FailureCause, VerificationCheck, VerificationReport
from .probes import VerificationContext, get_vendor_checks
from .stages import (
    BootParametersActive, ComputeFunctional, DeviceNodesPresent, DriverLoaded,
    HardwareDetected, OptionalTooling, SandboxReachable, Stage, VendorToolFunctional,
)

logger = logging.getLogger(__name__)


def _cause_for(error: GpuSetupError) -> FailureCause:
    try:
        return FailureCause(error.code)
    except ValueError:
        return FailureCause.TOOL_NON_FUNCTIONAL


class VerificationPipeline:
    """Ordered verification stages with shared aggregation."""

    def __init__(self, stages: Sequence[Stage]):
        self.stages: List[Stage] = list(stages)

    @classmethod
    def for_vendor(
        cls,
        vendor: Vendor,
        container_id: Optional[str] = None,
        boot_keys: Sequence[str] = (),
    ) -> "VerificationPipeline":
        """Standard stage list for a vendor and verification target."""
        get_vendor_checks(vendor)

        stages: List[Stage] = [HardwareDetected(), DriverLoaded()]
        if boot_keys:
            stages.append(BootParametersActive())
        stages.extend([DeviceNodesPresent(), VendorToolFunctional(), ComputeFunctional()])
        if container_id:
            stages.append(SandboxReachable())
        stages.append(OptionalTooling())
        return cls(stages)

    def run(self, ctx: VerificationContext, deadline: Optional[float] = None) -> VerificationReport:
        """
        Run every stage and build the report.

        Args:
            ctx: Shared context
            deadline: time.monotonic() value after which remaining stages
                report TIMEOUT instead of running
        """
        if deadline is not None:
            ctx.deadline = deadline

        report = VerificationReport(
            vendor=ctx.vendor.value,
            pci_address=ctx.pci_address,
            container_id=ctx.container_id,
        )

        with LogContext(vendor=ctx.vendor.value, container_id=ctx.container_id):
            for stage in self.stages:
                check = self._run_stage(stage, ctx)
                report.checks.append(check)
                if ctx.device is not None and report.pci_address is None:
                    report.pci_address = ctx.device.pci_address

                log = logger.info if check.passed or not check.required else logger.warning
                log(f"{check.name}: {check.outcome.value} - {check.message}")

                if stage.terminal and not check.passed:
                    logger.error(f"{check.name} failed; skipping remaining stages")
                    break

        logger.info(
            f"Verification {report.overall_status.value} ({report.passed}/{report.total} passed)"
        )
        return report

    def _run_stage(self, stage: Stage, ctx: VerificationContext) -> VerificationCheck:
        if ctx.expired():
            return VerificationCheck(
                stage.name, stage.required, CheckOutcome.FAIL,
                "Deadline expired before this check ran", cause=FailureCause.TIMEOUT,
            )

        start = time.monotonic()
        try:
            check = stage.run(ctx)
        except GpuSetupError as e:
            logger.debug(f"{stage.name} raised {e!r}")
            check = VerificationCheck(
                stage.name, stage.required, CheckOutcome.FAIL, e.message, cause=_cause_for(e),
            )
        except OSError as e:
            check = VerificationCheck(
                stage.name, stage.required, CheckOutcome.UNKNOWN, f"{stage.name} could not run: {e}",
            )
        check.duration = time.monotonic() - start
        return check


def verify(
    ctx: VerificationContext,
    deadline: Optional[float] = None,
) -> VerificationReport:
    """Build the standard pipeline for a context and run it."""
    pipeline = VerificationPipeline.for_vendor(ctx.vendor, ctx.container_id, ctx.boot_keys)
    return pipeline.run(ctx, deadline)
