"""
Boot Parameter Manager

Idempotent editing of managed kernel parameters. A desired value that is
already persisted never causes a write; otherwise every occurrence of the
managed keys is stripped and the desired pairs appended once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from common.exceptions import InvalidConfigError
from common.host import HostFacts
from utils.process import CommandRunner

from .backends import BootBackend, detect_backend

logger = logging.getLogger(__name__)

MIN_GTT_GB = 1
MAX_GTT_GB = 96
GTT_KEYS = ("amdgpu.gttsize", "ttm.pages_limit", "ttm.page_pool_size")


def format_param(key: str, value: Optional[str]) -> str:
    if value is None or value == "":
        return key
    return f"{key}={value}"


@dataclass
class BootParameterSet:
    """Ordered kernel parameter tokens from one command line."""

    tokens: List[str] = field(default_factory=list)
    backend: str = ""

    @classmethod
    def parse(cls, line: str, backend: str = "") -> "BootParameterSet":
        return cls(line.split(), backend)

    @staticmethod
    def key_of(token: str) -> str:
        return token.split("=", 1)[0]

    def get(self, key: str) -> Optional[str]:
        """
        Value of the last occurrence of key.

        Flags without "=" yield "", absent keys None.
        """
        value = None
        for token in self.tokens:
            name, sep, rest = token.partition("=")
            if name == key:
                value = rest if sep else ""
        return value

    def satisfies(self, desired: Mapping[str, str]) -> bool:
        return all(self.get(key) == str(value) for key, value in desired.items())

    def without(self, keys: Iterable[str]) -> "BootParameterSet":
        keys = set(keys)
        return BootParameterSet(
            [t for t in self.tokens if self.key_of(t) not in keys], self.backend
        )

    def merged(self, desired: Mapping[str, str]) -> "BootParameterSet":
        base = self.without(desired.keys())
        base.tokens.extend(format_param(k, str(v)) for k, v in desired.items())
        return base

    def __str__(self) -> str:
        return " ".join(self.tokens)


@dataclass(frozen=True)
class ApplyResult:
    changed: bool
    reboot_required: bool


class BootParameterManager:
    """Applies managed kernel parameters through the detected backend."""

    def __init__(
        self,
        backend: Optional[BootBackend] = None,
        host: Optional[HostFacts] = None,
        runner: Optional[CommandRunner] = None,
    ):
        self.host = host or HostFacts()
        self.backend = backend or detect_backend(self.host, runner)

    def current(self) -> BootParameterSet:
        """Persisted parameters."""
        return BootParameterSet.parse(self.backend.read_line(), self.backend.name)

    def running(self) -> BootParameterSet:
        """Parameters of the booted kernel."""
        return BootParameterSet.parse(self.host.read_running_cmdline(), "running")

    def pending_reboot(self, keys: Iterable[str]) -> bool:
        """True if the booted kernel disagrees with the persisted values."""
        persisted = self.current()
        running = self.running()
        pending = [k for k in keys if persisted.get(k) != running.get(k)]
        if pending:
            logger.info(f"Not yet active: {', '.join(pending)}")
        return bool(pending)

    def apply(self, desired: Mapping[str, str]) -> ApplyResult:
        """
        Persist desired parameters.

        Raises:
            BootConfigError: Parameter line unreadable or refresh failed
        """
        desired = {k: str(v) for k, v in desired.items()}
        current = self.current()

        if current.satisfies(desired):
            logger.info("Boot parameters already configured")
            return ApplyResult(changed=False, reboot_required=self.pending_reboot(desired))

        new = current.merged(desired)
        logger.info(f"Setting boot parameters: {str(new)}")
        self.backend.write_line(str(new))
        self.backend.refresh()
        return ApplyResult(changed=True, reboot_required=True)

    def remove(self, keys: Iterable[str]) -> ApplyResult:
        """Strip managed keys from the persisted line."""
        keys = list(keys)
        current = self.current()

        if all(current.get(k) is None for k in keys):
            return ApplyResult(changed=False, reboot_required=self.pending_reboot(keys))

        self.backend.write_line(str(current.without(keys)))
        self.backend.refresh()
        return ApplyResult(changed=True, reboot_required=True)


def gtt_parameters(vram_gb: int) -> Dict[str, str]:
    """
    Kernel parameters reserving vram_gb of system memory for an iGPU.

    amdgpu.gttsize is in MiB; the TTM limits are in 4 KiB pages.
    """
    if isinstance(vram_gb, bool) or not isinstance(vram_gb, int):
        raise InvalidConfigError("vram_gb", vram_gb, "must be an integer")
    if not MIN_GTT_GB <= vram_gb <= MAX_GTT_GB:
        raise InvalidConfigError(
            "vram_gb", vram_gb, f"must be between {MIN_GTT_GB} and {MAX_GTT_GB} GB"
        )

    gtt_size = vram_gb * 1024
    pages = gtt_size * 256
    return {
        "amdgpu.gttsize": str(gtt_size),
        "ttm.pages_limit": str(pages),
        "ttm.page_pool_size": str(pages),
    }
