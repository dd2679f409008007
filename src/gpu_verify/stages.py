"""
Verification stages.

Each stage produces exactly one VerificationCheck. Stages record failures
instead of raising so a single run shows every problem at once.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional, Tuple

from common.exceptions import (
    AmbiguousGpuSelection, BootBackendNotFound, BootConfigError, DeviceNodeUnresolvable,
    HardwareNotFound,
)
from boot_config.manager import BootParameterManager
from passthrough.container import ContainerCLI
from passthrough.synthesizer import PassthroughSynthesizer

from .models import (
    BOOT_PARAMETERS_ACTIVE, COMPUTE_FUNCTIONAL, DEVICE_NODES_PRESENT, DRIVER_LOADED,
    HARDWARE_DETECTED, OPTIONAL_TOOLING, SANDBOX_REACHABLE, VENDOR_TOOL_FUNCTIONAL,
    CheckOutcome, FailureCause, VerificationCheck,
)
from .parsers import installed_packages, parse_proc_modules
from .probes import ToolProbe, VerificationContext

logger = logging.getLogger(__name__)


class Stage:
    """Base class: a named, optionally required probe."""

    name = ""
    required = True
    # Abort the pipeline when this stage does not pass
    terminal = False

    def run(self, ctx: VerificationContext) -> VerificationCheck:
        raise NotImplementedError

    def passed(self, message: str, details: Optional[List[str]] = None) -> VerificationCheck:
        return VerificationCheck(
            self.name, self.required, CheckOutcome.PASS, message, details=list(details or []),
        )

    def failed(
        self,
        message: str,
        cause: FailureCause,
        hint: str = "",
        reboot_pending: bool = False,
        details: Optional[List[str]] = None,
    ) -> VerificationCheck:
        return VerificationCheck(
            self.name, self.required, CheckOutcome.FAIL, message,
            cause=cause, hint=hint, reboot_pending=reboot_pending, details=list(details or []),
        )

    def unknown(self, message: str, hint: str = "") -> VerificationCheck:
        return VerificationCheck(self.name, self.required, CheckOutcome.UNKNOWN, message, hint=hint)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name} required={self.required}>"


class HardwareDetected(Stage):
    name = HARDWARE_DETECTED
    terminal = True

    def run(self, ctx):
        ctx.scanner.scan(timeout=ctx.probe_timeout())
        vendor = ctx.vendor.value.upper()

        try:
            device = ctx.scanner.select(ctx.vendor, ctx.pci_address)
            details = []
        except HardwareNotFound as e:
            return self.failed(
                e.message, FailureCause.HARDWARE_NOT_FOUND,
                hint="Check `lspci -nn | grep -i vga` and the GPU's slot/BIOS settings",
            )
        except AmbiguousGpuSelection as e:
            device = ctx.scanner.candidates(ctx.vendor)[0]
            details = [
                f"{len(e.details['candidates'])} {vendor} GPUs found; checking {device.pci_address}",
                "Pass --pci to choose another",
            ]

        ctx.device = device
        return self.passed(f"{vendor} GPU {device.pci_address}: {device.display_name}", details)


class DriverLoaded(Stage):
    name = DRIVER_LOADED

    def run(self, ctx):
        modules_file = ctx.host.path("/proc/modules")
        try:
            ctx.loaded_modules = parse_proc_modules(modules_file.read_text())
        except OSError as e:
            return self.unknown(f"Cannot read /proc/modules: {e}")

        wanted = ctx.checks.modules
        missing = [m for m in wanted if m not in ctx.loaded_modules]
        if not missing:
            return self.passed(f"Kernel module(s) loaded: {', '.join(wanted)}")

        artifacts = self._install_artifacts(ctx)
        message = f"Kernel module(s) not loaded: {', '.join(missing)}"
        if artifacts:
            return self.failed(
                message, FailureCause.DRIVER_NOT_LOADED,
                hint="Driver is installed but not active; reboot the host",
                reboot_pending=True,
                details=[f"Found: {a}" for a in artifacts],
            )
        return self.failed(message, FailureCause.DRIVER_NOT_LOADED, hint=ctx.checks.install_hint)

    def _install_artifacts(self, ctx) -> List[str]:
        """Evidence the vendor driver stack is installed."""
        checks = ctx.checks
        found = [p for p in checks.artifact_paths if ctx.host.exists(p)]
        found.extend(t for t in checks.artifact_tools if ctx.host.which(t))

        if checks.artifact_packages and not found:
            result = ctx.run_tool(["dpkg", "-l"])
            if result.ok:
                found.extend(installed_packages(result.stdout, checks.artifact_packages))
        return found


class BootParametersActive(Stage):
    """Persisted kernel parameters are live in the running kernel."""

    name = BOOT_PARAMETERS_ACTIVE

    def run(self, ctx):
        keys = list(ctx.boot_keys)
        try:
            manager = BootParameterManager(host=ctx.host, runner=ctx.runner)
            persisted = manager.current()
        except (BootBackendNotFound, BootConfigError) as e:
            return self.unknown(e.message)

        running = manager.running()
        details = [f"{k}: persisted={persisted.get(k)} running={running.get(k)}" for k in keys]

        if all(persisted.get(k) is None for k in keys):
            return self.failed(
                f"Not configured: {', '.join(keys)}", FailureCause.BOOT_PARAMS_MISSING,
                hint="Set them with gpu-bootparams", details=details,
            )
        if manager.pending_reboot(keys):
            return self.failed(
                "Boot parameters persisted but not active", FailureCause.BOOT_PARAMS_PENDING,
                hint="Reboot the host", reboot_pending=True, details=details,
            )
        return self.passed("Boot parameters active", details)


def _node_problems(ctx: VerificationContext, paths: List[str]) -> List[Tuple[FailureCause, str]]:
    problems = []
    compute = set(ctx.checks.compute_nodes)
    for path in paths:
        host_path = ctx.host.path(path)
        if not host_path.exists():
            label = "compute interface not found" if path in compute else "device node missing"
            problems.append((FailureCause.DEVICE_NODE_MISSING, f"{label}: {path}"))
        elif not os.access(host_path, os.R_OK | os.W_OK):
            problems.append((FailureCause.PERMISSION_DENIED, f"no read/write access: {path}"))
    return problems


class DeviceNodesPresent(Stage):
    name = DEVICE_NODES_PRESENT

    def run(self, ctx):
        device = ctx.device
        paths = list(ctx.checks.device_nodes)
        problems: List[Tuple[FailureCause, str]] = []

        if device.resolved:
            paths = [device.card_path, device.render_path] + paths
        elif ctx.checks.drm_required:
            problems.append((
                FailureCause.DEVICE_NODE_UNRESOLVABLE,
                f"no /dev/dri/by-path entries for {device.pci_address}",
            ))

        problems.extend(_node_problems(ctx, paths))
        if not problems:
            return self.passed(f"{len(paths)} device node(s) accessible", paths)

        # Missing nodes outrank permission problems
        causes = [cause for cause, _ in problems]
        for cause in (FailureCause.DEVICE_NODE_MISSING, FailureCause.DEVICE_NODE_UNRESOLVABLE):
            if cause in causes:
                break
        else:
            cause = causes[0]

        hint = "Add the user to the render and video groups or install the udev rules"
        if cause is not FailureCause.PERMISSION_DENIED:
            hint = "Check that the driver created its device nodes"
        return self.failed(
            "; ".join(message for _, message in problems), cause, hint=hint,
        )


class _ToolStage(Stage):
    """Runs a vendor tool and matches its output."""

    def probe(self, ctx) -> ToolProbe:
        raise NotImplementedError

    def run(self, ctx):
        probe = self.probe(ctx)
        command = " ".join(probe.argv)
        result = ctx.run_tool(probe.argv)

        if result.not_found:
            return self.failed(
                f"{probe.tool} not found", FailureCause.TOOL_MISSING,
                hint=f"Install {probe.package or probe.tool}",
            )
        if result.timed_out:
            return self.failed(
                f"{command} timed out", FailureCause.TIMEOUT,
                hint="The device may be wedged; check dmesg",
            )

        findings = probe.matcher(result.stdout)
        if not findings:
            reason = result.stderr.strip().splitlines()[-1:] or [f"exit code {result.returncode}"]
            return self.failed(
                f"{command} reported no device", FailureCause.TOOL_NON_FUNCTIONAL,
                hint="Check that the driver is loaded and the device nodes are accessible",
                details=reason,
            )
        return self.passed(f"{command} OK", findings)


class VendorToolFunctional(_ToolStage):
    name = VENDOR_TOOL_FUNCTIONAL

    def probe(self, ctx):
        return ctx.checks.tool_probe


class ComputeFunctional(_ToolStage):
    name = COMPUTE_FUNCTIONAL

    def probe(self, ctx):
        return ctx.checks.compute_probe


class SandboxReachable(Stage):
    """The passed-through nodes are usable from inside the container."""

    name = SANDBOX_REACHABLE

    def run(self, ctx):
        cid = ctx.container_id
        try:
            config = PassthroughSynthesizer(ctx.settings, ctx.host).synthesize(ctx.device)
        except DeviceNodeUnresolvable as e:
            return self.failed(e.message, FailureCause.DEVICE_NODE_UNRESOLVABLE)

        pct = ContainerCLI(ctx.runner)
        status = pct.status(cid, timeout=ctx.probe_timeout())
        if status != "running":
            return self.failed(
                f"Container {cid} is {status}", FailureCause.TOOL_NON_FUNCTIONAL,
                hint=f"Start it with `pct start {cid}`",
            )

        problems: List[Tuple[FailureCause, str]] = []
        checked = []
        for mount in config.bind_mounts:
            path = "/" + mount.container_path
            checked.append(path)
            problem = self._probe_path(ctx, pct, cid, path, mount.create_kind == "dir")
            if problem:
                problems.append(problem)
                if problem[0] in (FailureCause.TIMEOUT, FailureCause.TOOL_MISSING):
                    break

        if not problems:
            return self.passed(f"{len(checked)} device node(s) accessible in container {cid}", checked)

        return self.failed(
            "; ".join(message for _, message in problems), problems[0][0],
            hint=f"Re-run `gpu-passthrough apply {cid} {ctx.vendor.value}` and restart the container",
        )

    def _probe_path(self, ctx, pct, cid, path, is_dir) -> Optional[Tuple[FailureCause, str]]:
        tests = [("-d" if is_dir else "-e", FailureCause.DEVICE_NODE_MISSING, "missing")]
        if not is_dir:
            tests.append(("-r", FailureCause.PERMISSION_DENIED, "not readable"))
            tests.append(("-w", FailureCause.PERMISSION_DENIED, "not writable"))

        for flag, cause, label in tests:
            result = pct.exec(cid, ["test", flag, path], timeout=ctx.probe_timeout())
            if result.timed_out:
                return FailureCause.TIMEOUT, f"pct exec timed out on {path}"
            if result.not_found:
                return FailureCause.TOOL_MISSING, "pct not found"
            if not result.ok:
                return cause, f"{path} {label} in container"
        return None


class OptionalTooling(Stage):
    """Monitoring tools and udev rules; never affects the overall status."""

    name = OPTIONAL_TOOLING
    required = False

    def run(self, ctx):
        details = []
        missing = []
        for tool in ctx.checks.optional_tools:
            if ctx.host.which(tool):
                details.append(f"{tool}: installed")
            else:
                details.append(f"{tool}: not installed")
                missing.append(tool)

        rules = ctx.settings.udev_rules_path
        if ctx.host.exists(rules):
            details.append(f"udev rules: {rules}")
        else:
            details.append("udev rules: not installed (gpu-passthrough udev)")
            missing.append("udev rules")

        if missing:
            return self.failed(
                f"Not installed: {', '.join(missing)}", FailureCause.TOOL_MISSING,
                details=details,
            )
        return self.passed("All optional tooling present", details)
