"""
Pytest configuration and shared fixtures for GPU passthrough tests.

Provides a synthetic host filesystem and a scripted command runner so no
test touches the real machine.
"""

import os
import pytest
from unittest.mock import MagicMock, patch
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common.host import HostFacts
from utils.process import CommandResult


AMD_LSPCI = (
    "0000:c3:00.0 VGA compatible controller [0300]: Advanced Micro Devices, Inc. "
    "[AMD/ATI] Strix [Radeon 8060S Graphics] [1002:1586] (rev c1)"
)
NVIDIA_LSPCI = (
    "0000:01:00.0 VGA compatible controller [0300]: NVIDIA Corporation "
    "AD102 [GeForce RTX 4090] [10de:2684] (rev a1)"
)
INTEL_LSPCI = (
    "0000:00:02.0 VGA compatible controller [0300]: Intel Corporation "
    "Raptor Lake-S GT1 [UHD Graphics 770] [8086:a780] (rev 04)"
)
AUDIO_LSPCI = (
    "0000:c3:00.1 Audio device [0403]: Advanced Micro Devices, Inc. [AMD/ATI] "
    "Rembrandt Radeon High Definition Audio Controller [1002:1640]"
)

ROCMINFO_OUTPUT = """\
ROCk module is loaded
=====================
HSA Agents
==========
*******
Agent 1
*******
  Name:                    AMD RYZEN AI MAX+ 395 w/ Radeon 8060S
  Marketing Name:          AMD RYZEN AI MAX+ 395 w/ Radeon 8060S
  Vendor Name:             CPU
  Device Type:             CPU
*******
Agent 2
*******
  Name:                    gfx1151
  Marketing Name:          AMD Radeon Graphics
  Vendor Name:             AMD
  Device Type:             GPU
  ISA Info:
    ISA 1
      Name:                    amdgcn-amd-amdhsa--gfx1151
"""

ROCM_SMI_VRAM_OUTPUT = """\
============================ ROCm System Management Interface ============================
================================== Memory Usage (Bytes) ==================================
GPU[0]          : VRAM Total Memory (B): 536870912
GPU[0]          : VRAM Total Used Memory (B): 102400000
==========================================================================================
"""

NVIDIA_SMI_LIST_OUTPUT = "GPU 0: NVIDIA GeForce RTX 4090 (UUID: GPU-5c1b7a2e-1f0d-4b8e-9c3a-0d1e2f3a4b5c)\n"
NVIDIA_SMI_MEMORY_OUTPUT = "24564 MiB\n"


# ============ Command Runner ============

class FakeRunner:
    """
    Scripted stand-in for utils.process.CommandRunner.

    Responses are keyed by command prefix, matched on the executable's
    basename so absolute tool paths resolve the same way. The longest
    matching prefix wins; unknown commands behave as not installed.
    """

    def __init__(self):
        self.responses: Dict[Tuple[str, ...], dict] = {}
        self.calls: List[List[str]] = []
        self.timeouts: List[Optional[float]] = []

    def add(self, command: str, stdout: str = "", returncode: int = 0,
            stderr: str = "", timed_out: bool = False) -> None:
        self.responses[tuple(command.split())] = {
            "returncode": returncode,
            "stdout": stdout,
            "stderr": stderr,
            "timed_out": timed_out,
        }

    def run(self, argv, timeout=None) -> CommandResult:
        self.calls.append(list(argv))
        self.timeouts.append(timeout)

        name = [os.path.basename(argv[0]), *argv[1:]]
        for length in range(len(name), 0, -1):
            response = self.responses.get(tuple(name[:length]))
            if response is not None:
                return CommandResult(list(argv), **response)
        return CommandResult(list(argv), 127, stderr=f"{argv[0]}: command not found")

    def called(self, command: str) -> bool:
        wanted = command.split()
        return any(
            [os.path.basename(c[0]), *c[1:]][:len(wanted)] == wanted for c in self.calls
        )


# ============ Synthetic Host ============

class SyntheticHost:
    """A host filesystem laid out below a temporary directory."""

    def __init__(self, root: Path):
        self.root = root
        self.bin = root / "usr/bin"
        self.bin.mkdir(parents=True)
        (root / "dev/dri/by-path").mkdir(parents=True)
        (root / "proc").mkdir()
        self.cmdline = ""
        self.platform_version: Optional[str] = None
        self.load_modules()

    def facts(self) -> HostFacts:
        return HostFacts(
            root=self.root,
            search_path=str(self.bin),
            running_cmdline=self.cmdline,
            platform_version=self.platform_version,
        )

    def path(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")

    def write(self, absolute: str, content: str = "") -> Path:
        path = self.path(absolute)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path

    def mkdir(self, absolute: str) -> Path:
        path = self.path(absolute)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def add_drm(self, pci_address: str, card: str = "card1", render: str = "renderD128") -> None:
        """Create DRM nodes and their by-path links (relative, like udev makes them)."""
        self.write(f"/dev/dri/{card}")
        self.write(f"/dev/dri/{render}")
        by_path = self.path("/dev/dri/by-path")
        os.symlink(f"../{card}", by_path / f"pci-{pci_address}-card")
        os.symlink(f"../{render}", by_path / f"pci-{pci_address}-render")

    def add_tool(self, name: str) -> Path:
        tool = self.bin / name
        tool.write_text("#!/bin/sh\nexit 0\n")
        tool.chmod(0o755)
        return tool

    def load_modules(self, *names: str) -> None:
        lines = [f"{name} 16384 0 - Live 0x0000000000000000" for name in names]
        self.write("/proc/modules", "\n".join(lines) + ("\n" if lines else ""))

    def add_amd_gpu(self, pci_address: str = "0000:c3:00.0", kfd: bool = True) -> None:
        self.add_drm(pci_address)
        if kfd:
            self.write("/dev/kfd")

    def add_nvidia_gpu(self, pci_address: str = "0000:01:00.0", drm: bool = True) -> None:
        if drm:
            self.add_drm(pci_address, card="card0", render="renderD128")
        for node in ("nvidia0", "nvidiactl", "nvidia-modeset", "nvidia-uvm", "nvidia-uvm-tools"):
            self.write(f"/dev/{node}")
        self.write("/dev/nvidia-caps/nvidia-cap1")


@pytest.fixture
def synthetic_host(tmp_path: Path) -> SyntheticHost:
    """Empty synthetic host root."""
    return SyntheticHost(tmp_path / "host")


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Scripted command runner with nothing installed."""
    return FakeRunner()


@pytest.fixture
def amd_host(synthetic_host, fake_runner):
    """Host with one AMD iGPU whose driver stack is fully working."""
    host = synthetic_host
    host.add_amd_gpu()
    host.load_modules("amdgpu")
    host.mkdir("/opt/rocm")
    for tool in ("rocminfo", "rocm-smi"):
        host.add_tool(tool)
    fake_runner.add("lspci -nn -D", stdout=AMD_LSPCI + "\n" + AUDIO_LSPCI + "\n")
    fake_runner.add("rocminfo", stdout=ROCMINFO_OUTPUT)
    fake_runner.add("rocm-smi --showmeminfo vram", stdout=ROCM_SMI_VRAM_OUTPUT)
    return host


@pytest.fixture
def nvidia_host(synthetic_host, fake_runner):
    """Host with one NVIDIA GPU whose driver stack is fully working."""
    host = synthetic_host
    host.add_nvidia_gpu()
    host.load_modules("nvidia", "nvidia_uvm", "nvidia_drm")
    host.add_tool("nvidia-smi")
    fake_runner.add("lspci -nn -D", stdout=NVIDIA_LSPCI + "\n" + INTEL_LSPCI + "\n")
    fake_runner.add("nvidia-smi -L", stdout=NVIDIA_SMI_LIST_OUTPUT)
    fake_runner.add("nvidia-smi --query-gpu=memory.total", stdout=NVIDIA_SMI_MEMORY_OUTPUT)
    return host


@pytest.fixture
def container_dir(synthetic_host) -> Path:
    """Container config directory with one plain container config."""
    directory = synthetic_host.mkdir("/etc/pve/lxc")
    (directory / "101.conf").write_text(
        "arch: amd64\n"
        "cores: 8\n"
        "hostname: ollama\n"
        "memory: 32768\n"
        "rootfs: local-lvm:vm-101-disk-0,size=64G\n"
        "unprivileged: 0\n"
    )
    return directory


# ============ Subprocess Fixtures ============

@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for tests."""
    with patch('subprocess.run') as mock_run:
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout="",
            stderr="",
        )
        yield mock_run


# ============ Marker Configuration ============

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "requires_root: marks tests that need root privileges"
    )
    config.addinivalue_line(
        "markers", "unit: fast unit tests with no external deps"
    )
    config.addinivalue_line(
        "markers", "integration: tests that run several components together"
    )
    config.addinivalue_line(
        "markers", "hardware: hardware-dependent tests"
    )


def pytest_collection_modifyitems(config, items):
    """Skip tests based on environment."""
    skip_hw = pytest.mark.skip(reason="Hardware tests disabled in CI")
    skip_root = pytest.mark.skip(reason="Requires root privileges")

    for item in items:
        # Skip hardware tests in CI
        if "hardware" in item.keywords and os.environ.get("CI"):
            item.add_marker(skip_hw)

        # Skip root tests if not root
        if "requires_root" in item.keywords:
            if os.geteuid() != 0:
                item.add_marker(skip_root)
