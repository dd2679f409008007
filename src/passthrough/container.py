"""
Container collaborator.

ContainerConfigWriter owns the managed passthrough block inside a
container's configuration file; ContainerCLI wraps the `pct` tool used to
start containers and run probes inside them.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from common.decorators import retry
from common.exceptions import InvalidConfigError, SandboxConfigWriteFailed, ToolNonFunctional
from common.host import HostFacts
from common.logging_config import LogContext
from utils.atomic_write import update_file
from utils.process import CommandResult, CommandRunner

from .rules import BLOCK_BEGIN, BLOCK_END, PassthroughConfig
from .synthesizer import DRM_MAJOR, VENDOR_PROFILES

logger = logging.getLogger(__name__)

SECTION_RE = re.compile(r"^\[[^\]]+\]\s*$")
GPU_MOUNT_RE = re.compile(r"^lxc\.mount\.entry:\s*\S+\s+dev/(?:dri/|kfd\b|nvidia)", re.MULTILINE)

MANAGED_MAJORS = sorted(
    {DRM_MAJOR} | {major for profile in VENDOR_PROFILES.values() for major in profile.device_majors}
)
# Directive shapes this tool writes; used only when the markers are gone
MANAGED_DIRECTIVE_RE = re.compile(
    r"^lxc\.cgroup2\.devices\.allow:\s*c\s+(?:" + "|".join(map(str, MANAGED_MAJORS)) + r"):\*\s+rwm\s*$"
    r"|^lxc\.mount\.entry:\s*\S+\s+(?:dev/(?:dri/|kfd\b|nvidia)|sys/module/apparmor/parameters/enabled\s)"
    r"|^lxc\.apparmor\.profile:\s*unconfined\s*$"
)


def _validate_container_id(container_id) -> str:
    cid = str(container_id).strip()
    if not cid.isdigit():
        raise InvalidConfigError("container_id", container_id, "must be numeric")
    return cid


def split_managed_block(text: str) -> Tuple[List[str], List[str]]:
    """
    Split config lines into (unmanaged lines, managed block lines).

    Raises:
        ValueError: A BEGIN marker without a matching END marker
    """
    outside: List[str] = []
    block: List[str] = []
    inside = False

    for line in text.splitlines():
        if line.startswith(BLOCK_BEGIN):
            inside = True
            block.append(line)
        elif inside:
            block.append(line)
            if line.startswith(BLOCK_END):
                inside = False
        else:
            outside.append(line)

    if inside:
        raise ValueError("managed block has no end marker")
    return outside, block


class ContainerConfigWriter:
    """Writes PassthroughConfig blocks into container config files."""

    def __init__(self, config_dir: str = "/etc/pve/lxc", host: Optional[HostFacts] = None):
        self.config_dir = config_dir
        self.host = host or HostFacts()

    def config_path(self, container_id) -> Path:
        cid = _validate_container_id(container_id)
        return self.host.path(f"{self.config_dir}/{cid}.conf")

    def _read(self, path: Path) -> str:
        if not path.exists():
            raise SandboxConfigWriteFailed(str(path), "container config does not exist")
        try:
            return path.read_text()
        except OSError as e:
            raise SandboxConfigWriteFailed(str(path), "cannot read container config", e)

    def current_block(self, container_id) -> List[str]:
        """Lines of the managed block currently in the config, if any."""
        path = self.config_path(container_id)
        try:
            _, block = split_managed_block(self._read(path))
        except ValueError as e:
            raise SandboxConfigWriteFailed(str(path), str(e))
        return block

    def apply(self, container_id, config: PassthroughConfig) -> bool:
        """
        Replace the managed block with the rendered config.

        Directives go before the first snapshot section so they apply to
        the live container rather than a snapshot. Any existing line equal
        to one of the new directives is dropped first, so a directive is
        never written twice even when the markers no longer enclose it.

        Returns:
            True if the file was rewritten, False if already current
        """
        path = self.config_path(container_id)
        with LogContext(container_id=str(container_id), vendor=config.vendor):
            return self._write_block(path, config.render().splitlines(), config.directives())

    def remove(self, container_id) -> bool:
        """Drop the managed block. Returns True if the file changed."""
        path = self.config_path(container_id)
        if not self._split(path, self._read(path))[1]:
            logger.info(f"{path.name} has no passthrough block")
            return False
        return self._write_block(path, [], [])

    def _split(self, path: Path, text: str) -> Tuple[List[str], List[str]]:
        try:
            return split_managed_block(text)
        except ValueError as e:
            raise SandboxConfigWriteFailed(str(path), str(e))

    def _write_block(self, path: Path, block: Sequence[str], directives: Sequence[str]) -> bool:
        outside, old_block = self._split(path, self._read(path))
        # Snapshot sections keep their own copies of the directives
        main, sections = self._split_sections(outside)

        if old_block and not any(line.startswith("lxc.") for line in old_block):
            # The platform moved the comment markers to the top of the file
            # and left the directives behind; recognise those by content.
            logger.info(f"Markers in {path.name} were relocated; collecting orphaned directives")
            main = [line for line in main if not MANAGED_DIRECTIVE_RE.match(line)]

        duplicates = set(directives)
        main = [line for line in main if line.rstrip() not in duplicates]

        while main and not main[-1].strip():
            main.pop()

        lines = main + list(block)
        if sections:
            lines.append("")
            lines.extend(sections)
        content = "\n".join(lines) + "\n"

        try:
            changed = update_file(path, content)
        except OSError as e:
            raise SandboxConfigWriteFailed(str(path), "write failed", e)
        if not changed:
            logger.info(f"{path.name} already up to date")
            return False

        logger.info(f"Updated passthrough block in {path}")
        return True

    @staticmethod
    def _split_sections(lines: List[str]) -> Tuple[List[str], List[str]]:
        for index, line in enumerate(lines):
            if SECTION_RE.match(line):
                return lines[:index], lines[index:]
        return list(lines), []

    def gpu_containers(self) -> List[str]:
        """IDs of containers whose config binds a GPU compute device."""
        directory = self.host.path(self.config_dir)
        if not directory.is_dir():
            return []

        found = []
        for conf in directory.glob("*.conf"):
            if not conf.stem.isdigit():
                continue
            try:
                text = conf.read_text()
            except OSError as e:
                logger.debug(f"Skipping {conf}: {e}")
                continue
            if GPU_MOUNT_RE.search(text):
                found.append(conf.stem)

        return sorted(found, key=int)


class ContainerCLI:
    """Thin wrapper over the container management tool."""

    def __init__(self, runner: Optional[CommandRunner] = None, tool: str = "pct"):
        self.runner = runner or CommandRunner()
        self.tool = tool

    def exec(self, container_id, argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """Run a command inside a running container."""
        cid = _validate_container_id(container_id)
        return self.runner.run([self.tool, "exec", cid, "--", *argv], timeout=timeout)

    def status(self, container_id, timeout: Optional[float] = None) -> str:
        """Container state such as "running" or "stopped"; "unknown" on error."""
        cid = _validate_container_id(container_id)
        result = self.runner.run([self.tool, "status", cid], timeout=timeout)
        if not result.ok:
            return "unknown"
        # "status: running"
        _, _, state = result.stdout.strip().partition(":")
        return state.strip() or "unknown"

    def is_running(self, container_id) -> bool:
        return self.status(container_id) == "running"

    def start(self, container_id) -> None:
        cid = _validate_container_id(container_id)
        result = self.runner.run([self.tool, "start", cid])
        if not result.ok:
            raise ToolNonFunctional(self.tool, result.stderr.strip() or f"start {cid} failed")
        logger.info(f"Started container {cid}")

    def wait_ready(self, container_id, attempts: int = 5, delay: float = 2.0) -> None:
        """
        Wait until commands can be executed in the container.

        Raises:
            ToolNonFunctional: Container never became ready
        """
        @retry(max_attempts=attempts, delay=delay, backoff=1.0, exceptions=(ToolNonFunctional,))
        def probe():
            result = self.exec(container_id, ["true"], timeout=10)
            if not result.ok:
                raise ToolNonFunctional(self.tool, f"container {container_id} not ready")

        probe()
