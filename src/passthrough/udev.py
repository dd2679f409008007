"""
udev rules for GPU device permissions.

Gives containers access to the DRM, KFD and NVIDIA nodes without running
as root on the host.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from common.exceptions import SandboxConfigWriteFailed
from common.host import HostFacts
from hardware_detect.gpu_scanner import Vendor
from utils.atomic_write import update_file
from utils.process import CommandRunner

from .templates import TemplateLoader, get_template_loader

logger = logging.getLogger(__name__)

UDEV_TEMPLATE = "99-gpu-passthrough.rules.j2"
DEFAULT_RULES_PATH = "/etc/udev/rules.d/99-gpu-passthrough.rules"


def render_udev_rules(
    vendors: Iterable[Vendor],
    loader: Optional[TemplateLoader] = None,
    drm_group: str = "video",
) -> str:
    """Render the rules file for the given vendors."""
    vendors = set(vendors)
    loader = loader or get_template_loader()
    return loader.render(
        UDEV_TEMPLATE,
        include_amd=Vendor.AMD in vendors,
        include_nvidia=Vendor.NVIDIA in vendors,
        drm_mode="0660",
        drm_group=drm_group,
        compute_mode="0666",
    )


def install_udev_rules(
    vendors: Iterable[Vendor],
    host: Optional[HostFacts] = None,
    runner: Optional[CommandRunner] = None,
    rules_path: str = DEFAULT_RULES_PATH,
) -> bool:
    """
    Write the rules file and reload udev when its content changed.

    Returns:
        True if the file was written
    """
    host = host or HostFacts()
    runner = runner or CommandRunner()
    path = host.path(rules_path)
    content = render_udev_rules(vendors)

    try:
        changed = update_file(path, content, backup=False, mode=0o644)
    except OSError as e:
        raise SandboxConfigWriteFailed(rules_path, "cannot write udev rules", e)
    if not changed:
        logger.info(f"{rules_path} already up to date")
        return False
    logger.info(f"Wrote {rules_path}")

    for argv in (["udevadm", "control", "--reload-rules"], ["udevadm", "trigger"]):
        result = runner.run(argv)
        if not result.ok:
            logger.warning(f"{' '.join(argv)} failed: {result.stderr.strip()}")

    return True
