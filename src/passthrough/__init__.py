"""Passthrough Module.

Builds container isolation rules for a GPU and writes them into container
configuration files.
"""

from .rules import (
    BLOCK_BEGIN, BLOCK_END, DeviceClassAllow, BindMount, PassthroughConfig,
    PassthroughRule, SandboxOverride,
)
from .synthesizer import (
    PassthroughSynthesizer, VendorProfile, VENDOR_PROFILES, missing_device_classes,
    DRM_MAJOR, AMD_KFD_MAJOR, NVIDIA_MAJOR, NVIDIA_UVM_MAJOR, NVIDIA_CAPS_MAJOR,
)
from .container import ContainerConfigWriter, ContainerCLI
from .udev import render_udev_rules, install_udev_rules

__all__ = [
    # Rules
    "BLOCK_BEGIN",
    "BLOCK_END",
    "DeviceClassAllow",
    "BindMount",
    "PassthroughConfig",
    "PassthroughRule",
    "SandboxOverride",
    # Synthesizer
    "PassthroughSynthesizer",
    "VendorProfile",
    "VENDOR_PROFILES",
    "missing_device_classes",
    "DRM_MAJOR",
    "AMD_KFD_MAJOR",
    "NVIDIA_MAJOR",
    "NVIDIA_UVM_MAJOR",
    "NVIDIA_CAPS_MAJOR",
    # Container collaborator
    "ContainerConfigWriter",
    "ContainerCLI",
    # udev
    "render_udev_rules",
    "install_udev_rules",
]
