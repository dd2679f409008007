"""
Per-vendor probe data and the shared verification context.

Vendor differences live in the VENDOR_CHECKS table; stages read from it
instead of branching on the vendor.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from common.host import HostFacts
from common.settings import Settings
from hardware_detect.gpu_scanner import GPUDevice, GPUScanner, Vendor
from utils.process import CommandResult, CommandRunner

from .parsers import (
    count_rocm_agents, parse_nvidia_memory_total, parse_nvidia_smi_list,
    parse_rocm_agents, parse_rocm_vram_total,
)

logger = logging.getLogger(__name__)

# Shortest timeout handed to a probe once a deadline is close
MIN_PROBE_TIMEOUT = 1.0


def _rocm_agents(text: str) -> List[str]:
    if count_rocm_agents(text) == 0:
        return []
    gpus = [a for a in parse_rocm_agents(text) if a.device_type.upper() in ("GPU", "")]
    return [f"Agent {a.index}: {a.marketing_name or a.name or 'GPU'}" for a in gpus]


def _rocm_vram(text: str) -> List[str]:
    total = parse_rocm_vram_total(text)
    if total is None:
        return []
    return [f"VRAM total: {total // (1024 * 1024)} MiB"]


def _nvidia_gpus(text: str) -> List[str]:
    return [f"GPU {g.index}: {g.name}" for g in parse_nvidia_smi_list(text)]


def _nvidia_memory(text: str) -> List[str]:
    return [f"GPU {i} memory: {mib} MiB" for i, mib in enumerate(parse_nvidia_memory_total(text))]


@dataclass(frozen=True)
class ToolProbe:
    """A vendor tool invocation and the matcher deciding success."""

    argv: Tuple[str, ...]
    # Returns human-readable findings; empty means the tool found nothing
    matcher: Callable[[str], List[str]]
    package: str = ""

    @property
    def tool(self) -> str:
        return self.argv[0]


@dataclass(frozen=True)
class VendorChecks:
    """What to verify for one vendor."""

    vendor: Vendor
    modules: Tuple[str, ...]
    artifact_paths: Tuple[str, ...]
    artifact_tools: Tuple[str, ...]
    artifact_packages: Tuple[str, ...]
    device_nodes: Tuple[str, ...]
    compute_nodes: Tuple[str, ...]
    tool_probe: ToolProbe
    compute_probe: ToolProbe
    optional_tools: Tuple[str, ...]
    drm_required: bool
    install_hint: str


VENDOR_CHECKS: Dict[Vendor, VendorChecks] = {
    Vendor.AMD: VendorChecks(
        vendor=Vendor.AMD,
        modules=("amdgpu",),
        artifact_paths=("/opt/rocm",),
        artifact_tools=("rocm-smi",),
        artifact_packages=(),
        device_nodes=("/dev/kfd",),
        compute_nodes=("/dev/kfd",),
        tool_probe=ToolProbe(("rocminfo",), _rocm_agents, package="rocminfo"),
        compute_probe=ToolProbe(("rocm-smi", "--showmeminfo", "vram"), _rocm_vram, package="rocm-smi"),
        optional_tools=("nvtop", "radeontop"),
        drm_required=True,
        install_hint="Install the AMD GPU driver and ROCm packages",
    ),
    Vendor.NVIDIA: VendorChecks(
        vendor=Vendor.NVIDIA,
        modules=("nvidia", "nvidia_uvm"),
        artifact_paths=(),
        artifact_tools=("nvidia-smi",),
        artifact_packages=("nvidia-kernel-dkms", "nvidia-driver"),
        device_nodes=("/dev/nvidia0", "/dev/nvidiactl", "/dev/nvidia-uvm"),
        compute_nodes=("/dev/nvidia-uvm",),
        tool_probe=ToolProbe(("nvidia-smi", "-L"), _nvidia_gpus, package="nvidia-smi"),
        compute_probe=ToolProbe(
            ("nvidia-smi", "--query-gpu=memory.total", "--format=csv,noheader"),
            _nvidia_memory,
            package="nvidia-smi",
        ),
        optional_tools=("nvtop",),
        drm_required=False,
        install_hint="Install the NVIDIA driver packages",
    ),
}


def get_vendor_checks(vendor: Vendor) -> VendorChecks:
    try:
        return VENDOR_CHECKS[vendor]
    except KeyError:
        raise ValueError(f"Cannot verify vendor {vendor.value!r}") from None


@dataclass
class VerificationContext:
    """Inputs shared by all stages of one run, plus what earlier stages found."""

    vendor: Vendor
    host: HostFacts
    runner: CommandRunner
    settings: Settings = field(default_factory=Settings)
    scanner: Optional[GPUScanner] = None
    pci_address: Optional[str] = None
    container_id: Optional[str] = None
    boot_keys: Sequence[str] = ()
    deadline: Optional[float] = None   # time.monotonic() value

    # Filled in by stages
    device: Optional[GPUDevice] = None
    loaded_modules: Set[str] = field(default_factory=set)

    def __post_init__(self):
        if self.scanner is None:
            self.scanner = GPUScanner(self.host, self.runner)

    @property
    def checks(self) -> VendorChecks:
        return get_vendor_checks(self.vendor)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def probe_timeout(self) -> float:
        """Per-probe timeout clamped to the remaining deadline."""
        timeout = self.settings.probe_timeout
        remaining = self.remaining()
        if remaining is not None:
            timeout = max(MIN_PROBE_TIMEOUT, min(timeout, remaining))
        return timeout

    def run(self, argv: Sequence[str]) -> CommandResult:
        """Run a command with the clamped probe timeout."""
        return self.runner.run(argv, timeout=self.probe_timeout())

    def run_tool(self, argv: Sequence[str]) -> CommandResult:
        """
        Run a host tool found on the captured search path.

        A tool missing from the search path is reported as returncode 127
        without being executed.
        """
        path = self.host.which(argv[0])
        if path is None:
            logger.debug(f"{argv[0]} not on search path")
            return CommandResult(list(argv), 127, stderr=f"{argv[0]}: command not found")
        return self.run([path, *argv[1:]])
