"""
Boot configuration backends.

Two mutually exclusive file formats hold the persisted kernel command line:
/etc/kernel/cmdline (proxmox-boot-tool managed hosts, e.g. ZFS root) and
/etc/default/grub. The backend is picked by which marker file exists.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence

from common.exceptions import BootBackendNotFound, BootConfigError
from common.host import HostFacts
from utils.atomic_write import atomic_write_text, safe_backup
from utils.process import CommandRunner

logger = logging.getLogger(__name__)


class BootBackend(ABC):
    """Reads, writes and activates one persisted parameter line."""

    name: str = ""
    marker: str = ""
    refresh_command: Sequence[str] = ()

    def __init__(self, host: Optional[HostFacts] = None, runner: Optional[CommandRunner] = None):
        self.host = host or HostFacts()
        # Bootloader refreshes rebuild initramfs images and can be slow
        self.runner = runner or CommandRunner(timeout=600)

    @property
    def path(self) -> Path:
        return self.host.path(self.marker)

    def present(self) -> bool:
        return self.path.exists()

    def _read_file(self) -> str:
        try:
            return self.path.read_text()
        except OSError as e:
            raise BootConfigError(self.marker, "cannot read", e)

    def _write_file(self, content: str) -> None:
        try:
            safe_backup(self.path)
            atomic_write_text(self.path, content)
        except OSError as e:
            raise BootConfigError(self.marker, "cannot write", e)
        logger.info(f"Updated {self.marker}")

    @abstractmethod
    def read_line(self) -> str:
        """Current persisted kernel parameter line."""

    @abstractmethod
    def write_line(self, line: str) -> None:
        """Persist a new kernel parameter line."""

    def refresh(self) -> None:
        """Run the bootloader's apply step."""
        logger.info(f"Running {' '.join(self.refresh_command)}")
        result = self.runner.run(list(self.refresh_command))
        if not result.ok:
            reason = result.stderr.strip() or f"exit code {result.returncode}"
            raise BootConfigError(self.marker, f"{self.refresh_command[0]} failed: {reason}")


class KernelCmdlineFileBackend(BootBackend):
    """/etc/kernel/cmdline: the whole first line is the parameter line."""

    name = "kernel-cmdline"
    marker = "/etc/kernel/cmdline"
    refresh_command = ("proxmox-boot-tool", "refresh")

    def read_line(self) -> str:
        lines = self._read_file().splitlines()
        return lines[0].strip() if lines else ""

    def write_line(self, line: str) -> None:
        lines = self._read_file().splitlines()
        if lines:
            lines[0] = line
        else:
            lines = [line]
        self._write_file("\n".join(lines) + "\n")


class GrubDefaultBackend(BootBackend):
    """/etc/default/grub: the GRUB_CMDLINE_LINUX_DEFAULT assignment."""

    name = "grub"
    marker = "/etc/default/grub"
    refresh_command = ("update-grub",)

    CMDLINE_RE = re.compile(
        r'^(?P<prefix>\s*GRUB_CMDLINE_LINUX_DEFAULT\s*=\s*)(?P<quote>["\'])(?P<params>.*?)(?P=quote)',
        re.MULTILINE,
    )

    def _match(self, content: str):
        match = self.CMDLINE_RE.search(content)
        if not match:
            raise BootConfigError(self.marker, "GRUB_CMDLINE_LINUX_DEFAULT not found")
        return match

    def read_line(self) -> str:
        return self._match(self._read_file()).group("params").strip()

    def write_line(self, line: str) -> None:
        content = self._read_file()
        match = self._match(content)
        quote = match.group("quote")
        new_content = (
            content[:match.start()]
            + f"{match.group('prefix')}{quote}{line}{quote}"
            + content[match.end():]
        )
        self._write_file(new_content)


BACKEND_CLASSES = (KernelCmdlineFileBackend, GrubDefaultBackend)


def detect_backend(
    host: Optional[HostFacts] = None,
    runner: Optional[CommandRunner] = None,
) -> BootBackend:
    """
    Pick the backend whose marker file exists.

    /etc/kernel/cmdline wins when both exist: on those hosts GRUB's
    defaults file is present but not used to boot.

    Raises:
        BootBackendNotFound: Neither marker file exists
    """
    host = host or HostFacts()
    for cls in BACKEND_CLASSES:
        backend = cls(host, runner)
        if backend.present():
            logger.debug(f"Boot backend: {backend.name}")
            return backend
    raise BootBackendNotFound([cls.marker for cls in BACKEND_CLASSES])
