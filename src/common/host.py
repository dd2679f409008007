"""
Host Facts

Everything the probes would otherwise read from the ambient process
environment, gathered into one value that callers pass around explicitly.
Tests build one against a temporary directory instead of a real machine.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

PLATFORM_VERSION_RE = re.compile(r"pve-manager/(\d+)(?:\.(\d+))?")


@dataclass(frozen=True)
class HostFacts:
    """Filesystem root, tool search path and kernel state of the host."""

    root: Path = Path("/")
    search_path: str = ""
    running_cmdline: Optional[str] = None
    platform_version: Optional[str] = None

    @classmethod
    def from_environment(cls, root: Path = Path("/")) -> "HostFacts":
        """Capture facts from the current process and machine."""
        facts = cls(root=root, search_path=os.environ.get("PATH", os.defpath))
        return replace(
            facts,
            running_cmdline=facts.read_running_cmdline(),
            platform_version=_detect_platform_version(facts),
        )

    def path(self, absolute: str) -> Path:
        """Map an absolute host path below the configured root."""
        return self.root / absolute.lstrip("/")

    def exists(self, absolute: str) -> bool:
        return self.path(absolute).exists()

    def which(self, tool: str) -> Optional[str]:
        """Locate an executable on the captured search path."""
        return shutil.which(tool, path=self.search_path or None)

    def read_running_cmdline(self) -> str:
        """Live kernel command line, preferring the captured value."""
        if self.running_cmdline is not None:
            return self.running_cmdline
        try:
            return self.path("/proc/cmdline").read_text().strip()
        except OSError as e:
            logger.debug(f"Cannot read running kernel command line: {e}")
            return ""

    @property
    def platform_major(self) -> Optional[int]:
        """Major version of the container platform, if known."""
        if not self.platform_version:
            return None
        match = PLATFORM_VERSION_RE.search(self.platform_version)
        if match:
            return int(match.group(1))
        try:
            return int(self.platform_version.split(".")[0])
        except ValueError:
            return None


def _detect_platform_version(facts: HostFacts) -> Optional[str]:
    """Ask pveversion for the platform release, if installed."""
    tool = facts.which("pveversion")
    if not tool:
        return None
    try:
        result = subprocess.run(
            [tool], capture_output=True, text=True, timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"pveversion failed: {e}")
        return None
    return result.stdout.strip() or None
