"""Hardware Detection Module.

This module provides:
- GPU inventory and vendor classification
- Stable DRM device path resolution via /dev/dri/by-path
"""

from .gpu_scanner import (
    GPUScanner, GPUDevice, DeviceNode, PciDisplayRecord, Vendor,
    classify_vendor, parse_lspci,
)
from .device_paths import DevicePathResolver, ResolvedPaths, ByPathEntry, canonical_pci_address

__all__ = [
    # GPU Scanner
    "GPUScanner",
    "GPUDevice",
    "DeviceNode",
    "PciDisplayRecord",
    "Vendor",
    "classify_vendor",
    "parse_lspci",
    # Device paths
    "DevicePathResolver",
    "ResolvedPaths",
    "ByPathEntry",
    "canonical_pci_address",
]

__version__ = "0.1.0"
