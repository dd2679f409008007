#!/usr/bin/env python3
"""
Hardware Detection - GPU Scanner Module

Scans the system for VGA/3D/Display controllers and classifies them by
vendor. Results are never cached: PCI addresses and device minors can
change between runs, so every invocation re-derives its inventory.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, asdict, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from common.decorators import handle_errors, timed
from common.exceptions import HardwareNotFound, AmbiguousGpuSelection
from common.host import HostFacts
from utils.process import CommandRunner

from .device_paths import DevicePathResolver, canonical_pci_address

logger = logging.getLogger(__name__)


class Vendor(Enum):
    """GPU vendors the passthrough engine knows how to handle."""
    AMD = "amd"
    NVIDIA = "nvidia"
    OTHER = "other"


# Checked in order; the first vendor whose marker appears wins.
VENDOR_MARKERS: Tuple[Tuple[Vendor, str], ...] = (
    (Vendor.AMD, "amd"),
    (Vendor.NVIDIA, "nvidia"),
)

DISPLAY_CLASS_RE = re.compile(r"VGA|3D|Display", re.IGNORECASE)
LSPCI_LINE_RE = re.compile(
    r"^(?P<address>(?:[0-9a-fA-F]{4}:)?[0-9a-fA-F]{2}:[0-9a-fA-F]{2}\.[0-7])\s+"
    r"(?P<class_name>[^:\[]+?)(?:\s+\[(?P<class_code>[0-9a-fA-F]{4})\])?:\s+"
    r"(?P<descriptor>.+)$"
)
PCI_IDS_RE = re.compile(r"\s*\[(?P<vendor>[0-9a-fA-F]{4}):(?P<device>[0-9a-fA-F]{4})\]")
REVISION_RE = re.compile(r"\s*\(rev [0-9a-fA-F]+\)\s*$")


def classify_vendor(descriptor: str) -> Vendor:
    """Classify a hardware descriptor by case-insensitive vendor substring."""
    lowered = descriptor.lower()
    for vendor, marker in VENDOR_MARKERS:
        if marker in lowered:
            return vendor
    return Vendor.OTHER


@dataclass(frozen=True)
class PciDisplayRecord:
    """One display-class PCI function as reported by the enumerator."""

    pci_address: str           # e.g., "0000:c3:00.0"
    class_name: str            # e.g., "VGA compatible controller"
    descriptor: str            # full vendor/model string
    vendor_id: str = ""        # e.g., "1002"
    device_id: str = ""        # e.g., "1586"

    @property
    def display_name(self) -> str:
        name = PCI_IDS_RE.sub("", self.descriptor)
        return REVISION_RE.sub("", name).strip()


def parse_lspci(output: str) -> List[PciDisplayRecord]:
    """
    Parse `lspci -nn -D` output, keeping display-class devices only.

    Example line:
        0000:c3:00.0 VGA compatible controller [0300]: Advanced Micro Devices,
        Inc. [AMD/ATI] Strix [Radeon 8060S Graphics] [1002:1586] (rev c1)
    """
    records = []
    for line in output.splitlines():
        match = LSPCI_LINE_RE.match(line.strip())
        if not match:
            continue
        if not DISPLAY_CLASS_RE.search(match.group("class_name")):
            continue

        descriptor = match.group("descriptor").strip()
        vendor_id = device_id = ""
        ids = PCI_IDS_RE.findall(descriptor)
        if ids:
            vendor_id, device_id = (x.lower() for x in ids[-1])

        records.append(PciDisplayRecord(
            pci_address=canonical_pci_address(match.group("address")),
            class_name=match.group("class_name").strip(),
            descriptor=descriptor,
            vendor_id=vendor_id,
            device_id=device_id,
        ))
    return records


@dataclass(frozen=True)
class DeviceNode:
    """A vendor device file present on the host."""

    path: str
    is_dir: bool = False


@dataclass(frozen=True)
class GPUDevice:
    """Represents one classified GPU."""

    vendor: Vendor
    pci_address: str           # e.g., "0000:c3:00.0"
    display_name: str          # e.g., "Advanced Micro Devices, Inc. [AMD/ATI] Strix"
    vendor_id: str = ""
    device_id: str = ""
    card_path: Optional[str] = None      # by-path target, e.g. /dev/dri/card1
    render_path: Optional[str] = None    # by-path target, e.g. /dev/dri/renderD128
    card_link: Optional[str] = None      # the by-path symlink itself
    render_link: Optional[str] = None
    vendor_nodes: Tuple[DeviceNode, ...] = field(default_factory=tuple)
    compute_interface_present: bool = False

    @property
    def resolved(self) -> bool:
        """True when both DRM nodes were found through by-path links."""
        return self.card_path is not None and self.render_path is not None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["vendor"] = self.vendor.value
        return data


class GPUScanner:
    """Scans the system for GPU devices."""

    PCI_DEVICE_PATH = "/sys/bus/pci/devices"
    PCI_IDS_PATHS = ("/usr/share/misc/pci.ids", "/usr/share/hwdata/pci.ids")
    DISPLAY_CLASS_PREFIX = "0x03"

    AMD_COMPUTE_NODE = "/dev/kfd"
    NVIDIA_UVM_PREFIX = "/dev/nvidia-uvm"

    def __init__(
        self,
        host: Optional[HostFacts] = None,
        runner: Optional[CommandRunner] = None,
        resolver: Optional[DevicePathResolver] = None,
    ):
        self.host = host or HostFacts()
        self.runner = runner or CommandRunner()
        self.resolver = resolver or DevicePathResolver(self.host)
        self.devices: List[GPUDevice] = []
        self.ignored: List[PciDisplayRecord] = []
        self._pci_ids_cache: Optional[dict] = None

    @timed
    def scan(self, timeout: Optional[float] = None) -> List[GPUDevice]:
        """
        Scan PCI display devices and return the AMD/NVIDIA ones.

        Never raises: no GPUs is a valid, empty result. Devices of other
        vendors are kept in self.ignored for display only.

        Args:
            timeout: Limit for the lspci call; the runner default when None
        """
        self.devices = []
        self.ignored = []

        try:
            records = self._enumerate(timeout)
        except OSError as e:
            logger.warning(f"PCI enumeration failed: {e}")
            return []

        for record in records:
            vendor = classify_vendor(record.descriptor)
            if vendor is Vendor.OTHER:
                logger.debug(f"Ignoring {record.pci_address}: {record.display_name}")
                self.ignored.append(record)
                continue
            self.devices.append(self._build_device(record, vendor))

        logger.info(
            f"Found {len(self.devices)} supported GPU(s), ignored {len(self.ignored)}"
        )
        return list(self.devices)

    def _enumerate(self, timeout: Optional[float] = None) -> List[PciDisplayRecord]:
        """Enumerate display devices with lspci, falling back to sysfs."""
        result = self.runner.run(["lspci", "-nn", "-D"], timeout=timeout)
        if result.ok:
            return parse_lspci(result.stdout)

        logger.info("lspci unavailable, reading PCI devices from sysfs")
        return self._enumerate_sysfs()

    def _enumerate_sysfs(self) -> List[PciDisplayRecord]:
        base = self.host.path(self.PCI_DEVICE_PATH)
        if not base.exists():
            return []

        records = []
        for device_path in sorted(base.iterdir()):
            device_class = self._read_sysfs(device_path / "class")
            if not device_class.startswith(self.DISPLAY_CLASS_PREFIX):
                continue

            vendor_id = self._read_sysfs(device_path / "vendor").replace("0x", "").lower()
            device_id = self._read_sysfs(device_path / "device").replace("0x", "").lower()
            vendor_name = self._lookup_vendor(vendor_id)
            device_name = self._lookup_device(vendor_id, device_id)

            records.append(PciDisplayRecord(
                pci_address=canonical_pci_address(device_path.name),
                class_name="Display controller",
                descriptor=f"{vendor_name} {device_name} [{vendor_id}:{device_id}]",
                vendor_id=vendor_id,
                device_id=device_id,
            ))
        return records

    def _build_device(self, record: PciDisplayRecord, vendor: Vendor) -> GPUDevice:
        paths = self.resolver.resolve(record.pci_address)
        nodes = self._vendor_nodes(vendor)

        if vendor is Vendor.AMD:
            compute = any(n.path == self.AMD_COMPUTE_NODE for n in nodes)
        else:
            compute = any(n.path.startswith(self.NVIDIA_UVM_PREFIX) for n in nodes)

        return GPUDevice(
            vendor=vendor,
            pci_address=record.pci_address,
            display_name=record.display_name,
            vendor_id=record.vendor_id,
            device_id=record.device_id,
            card_path=paths.card_path,
            render_path=paths.render_path,
            card_link=paths.card_link,
            render_link=paths.render_link,
            vendor_nodes=tuple(nodes),
            compute_interface_present=compute,
        )

    def _vendor_nodes(self, vendor: Vendor) -> List[DeviceNode]:
        """Vendor device files currently present on the host."""
        if vendor is Vendor.AMD:
            if self.host.exists(self.AMD_COMPUTE_NODE):
                return [DeviceNode(self.AMD_COMPUTE_NODE)]
            return []

        dev = self.host.path("/dev")
        if not dev.is_dir():
            return []
        return [
            DeviceNode(f"/dev/{p.name}", is_dir=p.is_dir())
            for p in sorted(dev.glob("nvidia*"))
        ]

    @handle_errors(OSError, default="", log_level=logging.DEBUG)
    def _read_sysfs(self, path: Path) -> str:
        """Read a sysfs file safely."""
        return path.read_text().strip()

    def _load_pci_ids(self) -> dict:
        """Load PCI vendor/device names from the pci.ids database."""
        if self._pci_ids_cache is not None:
            return self._pci_ids_cache

        # Fallback vendor names
        self._pci_ids_cache = {
            "vendors": {
                "10de": "NVIDIA Corporation",
                "1002": "Advanced Micro Devices, Inc. [AMD/ATI]",
                "8086": "Intel Corporation",
            },
            "devices": {},
        }

        for candidate in self.PCI_IDS_PATHS:
            path = self.host.path(candidate)
            if path.exists():
                self._parse_pci_ids(path)
                break

        return self._pci_ids_cache

    def _parse_pci_ids(self, path: Path) -> None:
        """Parse pci.ids file for vendor/device names."""
        current_vendor = None

        with open(path, 'r', errors='ignore') as f:
            for line in f:
                if line.startswith('#') or not line.strip():
                    continue

                # Vendor line (no leading whitespace)
                if not line.startswith(('\t', ' ')):
                    parts = line.strip().split(None, 1)
                    if len(parts) >= 2:
                        current_vendor = parts[0].lower()
                        self._pci_ids_cache["vendors"][current_vendor] = parts[1].strip()

                # Device line (single tab)
                elif line.startswith('\t') and not line.startswith('\t\t'):
                    if current_vendor:
                        parts = line.strip().split(None, 1)
                        if len(parts) >= 2:
                            key = f"{current_vendor}:{parts[0].lower()}"
                            self._pci_ids_cache["devices"][key] = parts[1].strip()

    def _lookup_vendor(self, vendor_id: str) -> str:
        return self._load_pci_ids()["vendors"].get(vendor_id, f"Unknown ({vendor_id})")

    def _lookup_device(self, vendor_id: str, device_id: str) -> str:
        key = f"{vendor_id}:{device_id}"
        return self._load_pci_ids()["devices"].get(key, f"Device {device_id}")

    def candidates(self, vendor: Vendor) -> List[GPUDevice]:
        """Scanned devices of one vendor, in PCI enumeration order."""
        return [d for d in self.devices if d.vendor is vendor]

    def select(self, vendor: Vendor, pci_address: Optional[str] = None) -> GPUDevice:
        """
        Pick the GPU to configure.

        An explicit PCI address always wins. Without one, exactly one
        candidate of the vendor is selected automatically; anything else
        needs an operator decision.

        Raises:
            HardwareNotFound: No matching device
            AmbiguousGpuSelection: Several candidates and no explicit choice
        """
        candidates = self.candidates(vendor)

        if pci_address:
            wanted = canonical_pci_address(pci_address)
            for device in candidates:
                if device.pci_address == wanted:
                    return device
            raise HardwareNotFound(
                vendor.value, f"No {vendor.value.upper()} GPU at {wanted}"
            )

        if not candidates:
            raise HardwareNotFound(vendor.value)
        if len(candidates) > 1:
            raise AmbiguousGpuSelection(vendor.value, [d.pci_address for d in candidates])
        return candidates[0]

    def to_json(self) -> str:
        """Export scan results as JSON."""
        return json.dumps([d.to_dict() for d in self.devices], indent=2)

    def print_summary(self) -> None:
        """Print a human-readable summary of detected GPUs."""
        print("=== GPU Scan ===\n")

        if not self.devices:
            print("No AMD or NVIDIA GPUs detected!")

        for gpu in self.devices:
            print(f"{gpu.vendor.value.upper()} GPU: {gpu.pci_address}")
            print(f"  {gpu.display_name}")
            if gpu.resolved:
                print(f"  DRM nodes: {gpu.card_path}, {gpu.render_path}")
            else:
                print("  DRM nodes: not resolvable via /dev/dri/by-path")
            compute = "present" if gpu.compute_interface_present else "missing"
            print(f"  Compute interface: {compute}")
            print()

        for record in self.ignored:
            print(f"Ignored: {record.pci_address} {record.display_name}")
