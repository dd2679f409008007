"""
Passthrough Config Synthesizer

Turns a classified GPUDevice into the container isolation rules needed to
use it: cgroup device-class allows, bind mounts and sandbox overrides.

The device majors below are fixed by the kernel drivers. Leaving out any
one of the three NVIDIA classes still lets nvidia-smi list the card while
CUDA fails inside the container, so completeness is checked explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from common.exceptions import DeviceNodeUnresolvable
from common.host import HostFacts
from common.settings import Settings
from hardware_detect.gpu_scanner import GPUDevice, Vendor

from .rules import BindMount, DeviceClassAllow, PassthroughConfig, SandboxOverride

logger = logging.getLogger(__name__)

DRM_MAJOR = 226
AMD_KFD_MAJOR = 234
NVIDIA_MAJOR = 195
NVIDIA_UVM_MAJOR = 511
NVIDIA_CAPS_MAJOR = 236

DEVICE_ACCESS = "rwm"


@dataclass(frozen=True)
class VendorProfile:
    """Per-vendor rule data."""

    vendor: Vendor
    device_majors: Tuple[int, ...]
    # In-container DRM names; None mirrors the host node name
    card_target: Optional[str]
    render_target: Optional[str]
    # AMD cannot work without its DRM nodes; NVIDIA compute does not need them
    requires_drm: bool
    drm_before_vendor_nodes: bool
    overrides: Tuple[SandboxOverride, ...]
    # Platform major where the AppArmor parameter mask is enabled automatically
    mask_platform_major: Optional[int] = None


VENDOR_PROFILES: Dict[Vendor, VendorProfile] = {
    Vendor.AMD: VendorProfile(
        vendor=Vendor.AMD,
        device_majors=(DRM_MAJOR, AMD_KFD_MAJOR),
        card_target="dev/dri/card0",
        render_target="dev/dri/renderD128",
        requires_drm=True,
        drm_before_vendor_nodes=True,
        overrides=(SandboxOverride.APPARMOR_UNCONFINED,),
    ),
    Vendor.NVIDIA: VendorProfile(
        vendor=Vendor.NVIDIA,
        device_majors=(NVIDIA_MAJOR, NVIDIA_UVM_MAJOR, NVIDIA_CAPS_MAJOR),
        card_target=None,
        render_target=None,
        requires_drm=False,
        drm_before_vendor_nodes=False,
        overrides=(SandboxOverride.APPARMOR_UNCONFINED,),
        mask_platform_major=9,
    ),
}


def get_profile(vendor: Vendor) -> VendorProfile:
    try:
        return VENDOR_PROFILES[vendor]
    except KeyError:
        raise ValueError(f"No passthrough profile for vendor {vendor.value!r}") from None


def missing_device_classes(config: PassthroughConfig, vendor: Vendor) -> List[int]:
    """Required device majors for a vendor that the config does not allow."""
    allowed = set(config.allowed_majors)
    return [major for major in get_profile(vendor).device_majors if major not in allowed]


class PassthroughSynthesizer:
    """
    Builds PassthroughConfig objects from GPUDevice inventory.

    Output depends only on the device, the settings and the platform
    version, so re-running against an already configured container
    produces the same block.
    """

    def __init__(self, settings: Optional[Settings] = None, host: Optional[HostFacts] = None):
        self.settings = settings or Settings()
        self.host = host or HostFacts()

    def synthesize(self, device: GPUDevice) -> PassthroughConfig:
        """
        Build the rule set for one GPU.

        Raises:
            DeviceNodeUnresolvable: The vendor needs DRM nodes the device lacks
        """
        profile = get_profile(device.vendor)
        config = PassthroughConfig(vendor=device.vendor.value, pci_address=device.pci_address)

        for major in profile.device_majors:
            config.add(DeviceClassAllow(major, DEVICE_ACCESS))

        drm_mounts = self._drm_mounts(device, profile)
        if drm_mounts and DRM_MAJOR not in profile.device_majors:
            config.add(DeviceClassAllow(DRM_MAJOR, DEVICE_ACCESS))

        vendor_mounts = self._vendor_mounts(device)
        if profile.drm_before_vendor_nodes:
            mounts = drm_mounts + vendor_mounts
        else:
            mounts = vendor_mounts + drm_mounts
        for mount in mounts:
            config.add(mount)

        for override in profile.overrides:
            config.add_override(override)
        if self._mask_apparmor_parameter(profile):
            config.add_override(SandboxOverride.MASK_APPARMOR_PARAMETER)

        logger.debug(
            f"Synthesized {len(config.rules)} rules for {device.vendor.value} {device.pci_address}"
        )
        return config

    def _drm_mounts(self, device: GPUDevice, profile: VendorProfile) -> List[BindMount]:
        if not device.resolved:
            if profile.requires_drm:
                raise DeviceNodeUnresolvable(
                    device.pci_address, "card and render nodes are required"
                )
            logger.warning(f"No DRM nodes for {device.pci_address}; binding vendor nodes only")
            return []

        if self.settings.stable_by_path_mounts and device.card_link and device.render_link:
            card_host, render_host = device.card_link, device.render_link
        else:
            card_host, render_host = device.card_path, device.render_path

        card_target = profile.card_target or device.card_path.lstrip("/")
        render_target = profile.render_target or device.render_path.lstrip("/")
        return [
            BindMount(card_host, card_target),
            BindMount(render_host, render_target),
        ]

    def _vendor_mounts(self, device: GPUDevice) -> List[BindMount]:
        """Mirror every vendor node present on the host; files first, then directories."""
        if not device.compute_interface_present:
            logger.warning(f"Compute interface absent for {device.pci_address}")

        files = sorted(n.path for n in device.vendor_nodes if not n.is_dir)
        dirs = sorted(n.path for n in device.vendor_nodes if n.is_dir)
        mounts = [BindMount(path, path.lstrip("/")) for path in files]
        mounts.extend(BindMount(path, path.lstrip("/"), create_kind="dir") for path in dirs)
        return mounts

    def _mask_apparmor_parameter(self, profile: VendorProfile) -> bool:
        forced = self.settings.mask_apparmor_parameter
        if forced is not None:
            return forced
        if profile.mask_platform_major is None:
            return False
        return self.host.platform_major == profile.mask_platform_major
