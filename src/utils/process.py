"""
Bounded external command execution.

Every probe of a vendor tool or container CLI goes through CommandRunner so
a wedged device can never hang the caller, and so tests can substitute a
scripted runner.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class CommandResult:
    """Outcome of one external command."""

    argv: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def not_found(self) -> bool:
        return self.returncode == 127


class CommandRunner:
    """Runs commands with captured output and a hard timeout."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def run(self, argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """
        Run a command and capture its output.

        Never raises for a missing executable or timeout; those are
        reported through returncode 127 and timed_out respectively.
        """
        limit = self.timeout if timeout is None else timeout
        logger.debug(f"Running: {' '.join(argv)} (timeout {limit:.0f}s)")

        try:
            proc = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=limit,
            )
        except FileNotFoundError:
            logger.debug(f"Command not found: {argv[0]}")
            return CommandResult(argv, 127, stderr=f"{argv[0]}: command not found")
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Command timed out after {limit:.0f}s: {' '.join(argv)}")
            return CommandResult(
                argv, -1,
                stdout=_as_text(e.stdout),
                stderr=_as_text(e.stderr),
                timed_out=True,
            )

        return CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data
